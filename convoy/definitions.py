"""Loading resource definitions from YAML documents."""

from __future__ import annotations

import logging
from pathlib import Path
from string import Template
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from .contracts import ResourceDefinition
from .errors import DefinitionError

logger = logging.getLogger(__name__)

_YAML_SUFFIXES = (".yaml", ".yml")


def _render(value: Any, variables: Mapping[str, Any]) -> Any:
    """Substitute ``${name}`` placeholders in every string of ``value``."""
    if isinstance(value, str):
        try:
            return Template(value).substitute(variables)
        except KeyError as exc:
            raise DefinitionError(f"Undefined template variable {exc}") from exc
        except ValueError as exc:
            raise DefinitionError(f"Invalid template '{value}': {exc}") from exc
    if isinstance(value, dict):
        return {k: _render(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [_render(v, variables) for v in value]
    return value


def parse_definitions(
    data: Any, variables: Optional[Mapping[str, Any]] = None
) -> List[ResourceDefinition]:
    """Build ResourceDefinitions from already-decoded data.

    ``data`` is either a mapping with a ``resources`` list or the list
    itself. Each entry needs ``identifier`` (or ``name``) and ``kind``.
    """

    if data is None:
        return []
    if isinstance(data, Mapping):
        entries = data.get("resources") or []
    elif isinstance(data, list):
        entries = data
    else:
        raise DefinitionError(
            f"Expected a mapping or list of resources, got {type(data).__name__}"
        )

    entries = _render(entries, variables or {})

    definitions: List[ResourceDefinition] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            raise DefinitionError(f"Resource #{index} is not a mapping")
        fields: Dict[str, Any] = dict(entry)
        if "identifier" not in fields and "name" in fields:
            fields["identifier"] = fields.pop("name")
        try:
            definitions.append(ResourceDefinition(**fields))
        except ValidationError as exc:
            raise DefinitionError(f"Invalid resource #{index}: {exc}") from exc
    return definitions


def _iter_documents(path: Path) -> Iterable[Path]:
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.suffix in _YAML_SUFFIXES)
    return [path]


def load_definitions(
    path: str | Path, variables: Optional[Mapping[str, Any]] = None
) -> List[ResourceDefinition]:
    """Load definitions from a YAML file or a directory of YAML files."""

    path = Path(path)
    if not path.exists():
        raise DefinitionError(f"Definitions path does not exist: {path}")

    definitions: List[ResourceDefinition] = []
    for document in _iter_documents(path):
        try:
            with open(document) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise DefinitionError(f"Cannot parse {document}: {exc}") from exc
        loaded = parse_definitions(data, variables)
        logger.debug(f"Loaded {len(loaded)} resources from {document}")
        definitions.extend(loaded)
    return definitions
