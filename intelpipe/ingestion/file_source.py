"""Local export collector (JSON lines or CSV)."""

from __future__ import annotations

import asyncio
import csv
import json
from pathlib import Path
from typing import Any, Dict, List, Tuple

from intelpipe.core.errors import ConfigError, SourceError
from intelpipe.core.logging import get_logger
from intelpipe.schemas.config import SourceConfig
from intelpipe.schemas.items import CollectedItem, ContentType
from .base import BaseCollector

log = get_logger("ingestion.file")


class FileCollector(BaseCollector):
    """Reads analyst uploads or vendor exports dropped on disk."""

    type = "file"

    def _path(self) -> Path:
        raw = self.config.options.get("path") or self.config.endpoint
        if not raw:
            raise ConfigError(f"source '{self.name}': file collector requires options.path")
        return Path(raw)

    async def health_check(self) -> bool:
        try:
            return self._path().exists()
        except ConfigError as exc:
            log.error(str(exc))
            return False

    async def collect(self, source_config: SourceConfig) -> List[CollectedItem]:
        path = self._path()
        if not path.exists():
            raise SourceError(source_config.name, f"file not found: {path}")

        fmt = source_config.options.get("format") or ("csv" if path.suffix.lower() == ".csv" else "jsonl")
        records, skipped = await asyncio.to_thread(self._read, path, fmt)

        id_field = source_config.options.get("id_field", "id")
        items: List[CollectedItem] = []
        for line_no, record in records:
            natural_key = record.get(id_field) or f"{path.name}:{line_no}"
            items.append(
                CollectedItem.create(
                    source=source_config.name,
                    natural_key=str(natural_key),
                    content=record,
                    content_type=ContentType.STRUCTURED,
                    source_url=str(record.get("url") or ""),
                    metadata={"path": str(path), "line": line_no},
                )
            )

        self.last_skipped = skipped
        log.info(f"Read {len(items)} records from {path} (skipped={skipped})")
        return items

    def _read(self, path: Path, fmt: str) -> Tuple[List[Tuple[int, Dict[str, Any]]], int]:
        if fmt == "csv":
            return self._read_csv(path)
        if fmt == "jsonl":
            return self._read_jsonl(path)
        raise ConfigError(f"source '{self.name}': unsupported file format '{fmt}'")

    def _read_jsonl(self, path: Path) -> Tuple[List[Tuple[int, Dict[str, Any]]], int]:
        records: List[Tuple[int, Dict[str, Any]]] = []
        skipped = 0
        with path.open("rb") as f:
            for line_no, raw in enumerate(f, start=1):
                try:
                    line = raw.decode("utf-8")
                except UnicodeDecodeError as exc:
                    log.warning(f"{self.name}: skipping undecodable line {line_no}: {exc}")
                    skipped += 1
                    continue
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as exc:
                    log.warning(f"{self.name}: skipping malformed line {line_no}: {exc}")
                    skipped += 1
                    continue
                if not isinstance(record, dict):
                    skipped += 1
                    continue
                records.append((line_no, record))
        return records, skipped

    def _read_csv(self, path: Path) -> Tuple[List[Tuple[int, Dict[str, Any]]], int]:
        records: List[Tuple[int, Dict[str, Any]]] = []
        skipped = 0
        # Undecodable bytes survive as surrogates so the offending row can be dropped alone
        with path.open("r", encoding="utf-8", errors="surrogateescape", newline="") as f:
            reader = csv.DictReader(f)
            while True:
                try:
                    row = next(reader)
                except StopIteration:
                    break
                except csv.Error as exc:
                    log.warning(f"{self.name}: skipping malformed row at line {reader.line_num}: {exc}")
                    skipped += 1
                    continue
                try:
                    for value in row.values():
                        if isinstance(value, str):
                            value.encode("utf-8")
                except UnicodeEncodeError:
                    log.warning(f"{self.name}: skipping undecodable row at line {reader.line_num}")
                    skipped += 1
                    continue
                records.append((reader.line_num, dict(row)))
        return records, skipped
