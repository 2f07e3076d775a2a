"""Local durable fallback: one JSON snapshot file per resource key.

File layout::

    {"version": 1, "resource": "tasks", "saved_at": "...", "records": [...]}

Writes go to a temporary file that then replaces the snapshot, so a crash
mid-write leaves the previous snapshot intact. Every method reads, modifies
and writes without awaiting in between, which keeps a read-modify-write
atomic under the single event loop.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from entitystore._constants import LOCAL_SNAPSHOT_VERSION
from entitystore.adapters.base import parse_record, require_mapping
from entitystore.exceptions import ConnectivityError, NotFoundError, ValidationError
from entitystore.models.record import Record, RecordId, id_key, index_of, merge_patch

_logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")
_DECIMAL_ID = re.compile(r"-?[0-9]+")


def next_numeric_id(records: Iterable[Record]) -> int:
    """Highest integer id plus one (``1`` when there is none).

    Ids compare by string form, so ``"7"`` counts as ``7``.
    """
    numeric = [int(id_key(record.id)) for record in records if _DECIMAL_ID.fullmatch(id_key(record.id))]
    return max(numeric) + 1 if numeric else 1


class LocalAdapter:
    """Reads and writes resource snapshots under *data_dir*."""

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = Path(data_dir)

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def snapshot_path(self, key: str) -> Path:
        return self._data_dir / f"{_UNSAFE_FILENAME_CHARS.sub('_', key)}.json"

    def _read(self, key: str) -> list[Record]:
        path = self.snapshot_path(key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise ConnectivityError(f"Cannot read local snapshot {path}: {exc}", resource=key) from exc

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            _logger.warning("Discarding unreadable local snapshot %s", path)
            return []

        items = data.get("records") if isinstance(data, dict) else data
        if not isinstance(items, list):
            _logger.warning("Discarding local snapshot %s without a record list", path)
            return []

        records: list[Record] = []
        seen: set[str] = set()
        for item in items:
            try:
                record = parse_record(item, resource=key)
            except ValidationError:
                _logger.warning("Skipping malformed record in %s: %r", path, item)
                continue
            if id_key(record.id) in seen:
                continue
            seen.add(id_key(record.id))
            records.append(record)
        return records

    def _write(self, key: str, records: list[Record]) -> None:
        path = self.snapshot_path(key)
        document = {
            "version": LOCAL_SNAPSHOT_VERSION,
            "resource": key,
            "saved_at": datetime.now(UTC).isoformat(),
            "records": [record.model_dump(mode="json") for record in records],
        }
        tmp_path = path.with_name(f"{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(document, ensure_ascii=False, default=str), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise ConnectivityError(f"Cannot write local snapshot {path}: {exc}", resource=key) from exc
        _logger.debug("Saved %d %s record(s) to %s", len(records), key, path)

    async def list(self, key: str) -> list[Record]:
        return self._read(key)

    async def replace_all(self, key: str, records: list[Record]) -> None:
        """Overwrite the snapshot for *key* (used to mirror remote reads)."""
        self._write(key, list(records))

    async def create(self, key: str, partial: Mapping[str, Any]) -> Record:
        payload = require_mapping(partial, resource=key, what="create payload")
        records = self._read(key)

        record_id = payload.get("id")
        if record_id is None:
            record_id = payload["id"] = next_numeric_id(records)
        if index_of(records, record_id) is not None:
            raise ValidationError(f"{key!r} already has a record with id {record_id!r}", resource=key, record_id=record_id)

        record = parse_record(payload, resource=key)
        records.insert(0, record)
        self._write(key, records)
        return record

    async def update(self, key: str, record_id: RecordId, patch: Mapping[str, Any]) -> Record:
        payload = require_mapping(patch, resource=key, what="update patch")
        records = self._read(key)
        index = index_of(records, record_id)
        if index is None:
            raise NotFoundError(f"{key!r} has no record with id {record_id!r}", resource=key, record_id=record_id)
        try:
            updated = merge_patch(records[index], payload)
        except ValueError as exc:
            raise ValidationError(str(exc), resource=key, record_id=record_id) from exc
        records[index] = updated
        self._write(key, records)
        return updated

    async def remove(self, key: str, record_id: RecordId) -> None:
        records = self._read(key)
        index = index_of(records, record_id)
        if index is None:
            return
        del records[index]
        self._write(key, records)
