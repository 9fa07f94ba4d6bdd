"""Source collectors and the registry that maps a source type to its collector."""

from __future__ import annotations

from typing import Any, Dict, Optional, Type

import httpx

from intelpipe.core.errors import ConfigError
from intelpipe.schemas.config import SourceConfig
from .api_source import ApiCollector
from .base import BaseCollector
from .feed_source import FeedCollector
from .file_source import FileCollector
from .registry_source import CrtShCollector

COLLECTORS: Dict[str, Type[BaseCollector]] = {
    FeedCollector.type: FeedCollector,
    ApiCollector.type: ApiCollector,
    CrtShCollector.type: CrtShCollector,
    FileCollector.type: FileCollector,
}


def build_collector(
    config: SourceConfig, client: Optional[httpx.AsyncClient] = None, **kwargs: Any
) -> BaseCollector:
    collector_cls = COLLECTORS.get(config.type)
    if collector_cls is None:
        raise ConfigError(f"source '{config.name}': unknown collector type '{config.type}'")
    return collector_cls(config, client, **kwargs)


__all__ = [
    "COLLECTORS",
    "ApiCollector",
    "BaseCollector",
    "CrtShCollector",
    "FeedCollector",
    "FileCollector",
    "build_collector",
]
