"""Durable per-file GPS memo with source priority.

Persisted as a JSON snapshot plus an append-only journal so that a crashed
run keeps every location resolved before the crash::

    gps_store.json           {"metadata": {...}, "records": [...]}
    gps_store.journal.jsonl  {"k": "/abs/path.jpg", "v": {...}} per line
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from timeline_geotag.geo import is_valid_coordinate_pair
from timeline_geotag.models import GpsFix, GpsRecord, GpsSource, confidence_for

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def path_key(path: str | Path) -> str:
    """Absolute, normalised file path used as the store key."""

    return str(Path(path).expanduser().resolve())


@dataclass(frozen=True, slots=True)
class GpsStoreConfig:
    """Where the store lives and how often the journal is folded into the snapshot.

    Attributes:
        path: Snapshot JSON path; the journal sits next to it.
        flush_every: Fold the journal after this many writes (0 = only on explicit flush).
    """

    path: Path
    flush_every: int = 200


class GpsPriorityStore:
    """Thread-safe file path -> GpsRecord map that respects source priority."""

    def __init__(self, config: GpsStoreConfig | str | Path) -> None:
        if not isinstance(config, GpsStoreConfig):
            config = GpsStoreConfig(path=Path(config))
        self._cfg = config
        self._path = Path(config.path)
        self._journal_path = self._path.with_name(f"{self._path.stem}.journal.jsonl")
        self._records: dict[str, GpsRecord] = {}
        self._loaded = False
        self._pending = 0
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def journal_path(self) -> Path:
        return self._journal_path

    def load(self) -> None:
        """Load snapshot and replay the journal (no-op once loaded)."""

        with self._lock:
            self._load_locked()

    def _load_locked(self) -> None:
        if self._loaded:
            return
        self._records = {}
        if self._path.exists():
            text = self._path.read_text(encoding="utf-8").strip()
            if text:
                try:
                    data = json.loads(text)
                except json.JSONDecodeError:
                    backup = self._path.with_suffix(self._path.suffix + ".broken")
                    backup.write_text(text, encoding="utf-8")
                    logger.warning("GPS 数据库文件损坏，已另存为 %s 并重新开始", backup.name)
                    data = {}
                raw_records = data.get("records") if isinstance(data, dict) else None
                for raw in raw_records or []:
                    self._put_raw(raw)
        self._replay_journal()
        self._loaded = True
        logger.debug("GPS 数据库已加载：%s 条记录", len(self._records))

    def _put_raw(self, raw: Any) -> None:
        try:
            record = GpsRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("跳过无法解析的 GPS 记录：%s", exc)
            return
        self._records[path_key(record.file_path)] = record

    def _replay_journal(self) -> None:
        if not self._journal_path.exists():
            return
        with self._journal_path.open("r", encoding="utf-8") as f:
            for line in f:
                s = line.strip()
                if not s:
                    continue
                try:
                    entry = json.loads(s)
                except json.JSONDecodeError:
                    # broken tail line from an interrupted write
                    continue
                if isinstance(entry, dict) and isinstance(entry.get("v"), dict):
                    self._put_raw(entry["v"])

    def get(self, path: str | Path) -> GpsRecord | None:
        with self._lock:
            self._load_locked()
            return self._records.get(path_key(path))

    def has(self, path: str | Path) -> bool:
        return self.get(path) is not None

    def store(
        self,
        path: str | Path,
        fix: GpsFix,
        source: GpsSource,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Record a location for a file.

        Returns:
            False when the coordinates are invalid or a record from a
            higher-priority source already exists; True otherwise.
        """

        if not is_valid_coordinate_pair(fix.latitude, fix.longitude):
            logger.warning("拒绝写入无效坐标：%s (%s, %s)", path, fix.latitude, fix.longitude)
            return False

        key = path_key(path)
        with self._lock:
            self._load_locked()
            current = self._records.get(key)
            if current is not None and current.source.priority < source.priority:
                logger.debug("%s 已有更高优先级的记录（%s），不覆盖", key, current.source.value)
                return False
            now = datetime.now(UTC).isoformat()
            record = GpsRecord(
                file_path=key,
                file_name=Path(key).name,
                coordinates=fix,
                source=source,
                confidence=confidence_for(source, current.confidence if current else None),
                interpolation_details=details,
                created_at=current.created_at if current else now,
                updated_at=now,
            )
            self._records[key] = record
            self._append_journal(key, record)
            self._pending += 1
            if self._cfg.flush_every and self._pending >= self._cfg.flush_every:
                self._flush_locked()
        return True

    def records(self) -> list[GpsRecord]:
        with self._lock:
            self._load_locked()
            return list(self._records.values())

    def records_by_source(self) -> dict[GpsSource, list[GpsRecord]]:
        out: dict[GpsSource, list[GpsRecord]] = {s: [] for s in GpsSource}
        for record in self.records():
            out[record.source].append(record)
        return out

    def statistics(self) -> dict[str, Any]:
        """Counts by source and confidence."""

        records = self.records()
        by_source: dict[str, int] = {}
        by_confidence: dict[str, int] = {}
        for r in records:
            by_source[r.source.value] = by_source.get(r.source.value, 0) + 1
            by_confidence[r.confidence.value] = by_confidence.get(r.confidence.value, 0) + 1
        return {"total": len(records), "by_source": by_source, "by_confidence": by_confidence}

    def flush(self) -> None:
        """Persist the snapshot (temp file then replace) and clear the journal."""

        with self._lock:
            self._load_locked()
            self._flush_locked()

    def reset(self) -> None:
        """Drop every record, on disk too."""

        with self._lock:
            self._records = {}
            self._loaded = True
            self._flush_locked()

    def _flush_locked(self) -> None:
        payload = {
            "metadata": {
                "version": SNAPSHOT_VERSION,
                "exportedAt": datetime.now(UTC).isoformat(),
                "recordCount": len(self._records),
            },
            "records": [r.to_dict() for r in self._records.values()],
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(self._path)
        if self._journal_path.exists():
            self._journal_path.unlink()
        self._pending = 0

    def _append_journal(self, key: str, record: GpsRecord) -> None:
        self._journal_path.parent.mkdir(parents=True, exist_ok=True)
        with self._journal_path.open("a", encoding="utf-8", newline="\n") as f:
            f.write(json.dumps({"k": key, "v": record.to_dict()}, ensure_ascii=False) + "\n")
