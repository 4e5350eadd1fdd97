from __future__ import annotations

import asyncio
from typing import Optional


class AbortSignal:
    """Cooperative cancellation flag shared by one pipeline run.

    Setting the flag never interrupts work already dispatched; executors and
    watchers check it between operations.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()
