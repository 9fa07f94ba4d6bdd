"""Load human-edited YAML source and alert definitions."""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Type, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from intelpipe.core.errors import ConfigError
from intelpipe.core.logging import get_logger
from intelpipe.schemas.config import AlertCondition, SourceConfig

log = get_logger("config_loader")

T = TypeVar("T", bound=BaseModel)


def _load_entries(path: Path, key: str) -> List[Any]:
    if not path.exists():
        log.warning(f"Config file not found: {path}")
        return []

    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: invalid YAML: {exc}") from exc

    if isinstance(data, dict):
        data = data.get(key, [])
    if not isinstance(data, list):
        raise ConfigError(f"{path}: expected a list under '{key}'")
    return data


def _parse(entries: List[Any], model: Type[T], path: Path) -> List[T]:
    parsed: List[T] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        try:
            obj = model.model_validate(entry)
        except ValidationError as exc:
            label = entry.get("name") if isinstance(entry, dict) else None
            raise ConfigError(f"{path}: entry {index} ({label or 'unnamed'}) is invalid: {exc}") from exc

        name = getattr(obj, "name")
        if name in seen:
            raise ConfigError(f"{path}: duplicate name '{name}'")
        seen.add(name)
        parsed.append(obj)
    return parsed


def load_source_configs(path: str | Path) -> List[SourceConfig]:
    path = Path(path)
    sources = _parse(_load_entries(path, "sources"), SourceConfig, path)
    log.info(f"Loaded {len(sources)} source definitions from {path}")
    return sources


def load_alert_conditions(path: str | Path) -> List[AlertCondition]:
    path = Path(path)
    conditions = _parse(_load_entries(path, "alerts"), AlertCondition, path)
    log.info(f"Loaded {len(conditions)} alert conditions from {path}")
    return conditions
