"""File-backed snapshot store.

Layout under the data directory, per dormitory:

    <entity_id>_<YYYY-MM-DD>.json   JSON array of that day's snapshots
    <entity_id>_latest.json         most recent snapshot

Appends are idempotent on the (date, time) key and the total number of
snapshots per dormitory is capped; the oldest readings go first. The latest
record is never trimmed.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from .errors import StoreError
from .models import Snapshot

logger = logging.getLogger("dorm-collector.store")

LATEST_SUFFIX = "latest"


@dataclass(frozen=True)
class AppendResult:
    """Outcome of an append."""

    stored: bool
    trimmed: int = 0


class SnapshotStore:
    """Append-only per-dormitory snapshot log with a latest pointer.

    Not safe for concurrent writers on the same dormitory; the collector
    serializes runs per dormitory before calling append().
    """

    def __init__(self, data_dir: Path, retention_max: int = 100):
        if retention_max < 1:
            raise ValueError("retention_max must be >= 1")
        self.data_dir = Path(data_dir)
        self.retention_max = retention_max

    # =========================================================================
    # File helpers
    # =========================================================================

    def _segment_path(self, entity_id: str, date: str) -> Path:
        return self.data_dir / f"{entity_id}_{date}.json"

    def _latest_path(self, entity_id: str) -> Path:
        return self.data_dir / f"{entity_id}_{LATEST_SUFFIX}.json"

    def _segment_dates(self, entity_id: str) -> List[str]:
        """Dates that have a segment file for this dormitory, oldest first."""
        if not self.data_dir.exists():
            return []
        pattern = re.compile(rf"^{re.escape(entity_id)}_(\d{{4}}-\d{{2}}-\d{{2}})\.json$")
        dates = []
        for path in self.data_dir.glob(f"{entity_id}_*.json"):
            match = pattern.match(path.name)
            if match:
                dates.append(match.group(1))
        return sorted(dates)

    def _read_file(self, path: Path):
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to read {path.name}: {e}")

    def _read_segment(self, entity_id: str, date: str) -> List[Snapshot]:
        path = self._segment_path(entity_id, date)
        raw = self._read_file(path)
        if raw is None:
            return []
        try:
            return [Snapshot.model_validate(item) for item in raw]
        except (PydanticValidationError, TypeError) as e:
            raise StoreError(f"Corrupt segment {path.name}: {e}")

    def _write_json(self, path: Path, payload):
        """Write JSON atomically (temp file + rename)."""
        tmp = path.with_name(path.name + ".tmp")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise StoreError(f"Failed to write {path.name}: {e}")

    def _write_segment(self, entity_id: str, date: str, snapshots: List[Snapshot]):
        path = self._segment_path(entity_id, date)
        if not snapshots:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise StoreError(f"Failed to delete {path.name}: {e}")
            return
        self._write_json(path, [s.model_dump(mode="json") for s in snapshots])

    def _write_latest(self, snapshot: Snapshot):
        self._write_json(self._latest_path(snapshot.entity_id), snapshot.model_dump(mode="json"))

    # =========================================================================
    # Public API
    # =========================================================================

    def append(self, snapshot: Snapshot) -> AppendResult:
        """Append a snapshot unless one with the same (date, time) exists.

        Raises:
            StoreError: On I/O failure
        """
        entity_id = snapshot.entity_id
        segment = self._read_segment(entity_id, snapshot.date)

        # Same (date, time) always lands in the same day segment
        existing = next((s for s in segment if s.key == snapshot.key), None)
        if existing is not None:
            logger.info(f"[{entity_id}] Reading for {snapshot.date} {snapshot.time} already recorded")
            # Repairs a latest record left behind by a failed earlier write
            latest = self.latest(entity_id)
            if latest is None or existing.timestamp > latest.timestamp:
                self._write_latest(existing)
            return AppendResult(stored=False)

        segment.append(snapshot)
        segment.sort(key=lambda s: s.timestamp)
        self._write_segment(entity_id, snapshot.date, segment)

        latest = self.latest(entity_id)
        if latest is None or snapshot.timestamp >= latest.timestamp:
            self._write_latest(snapshot)

        trimmed = self._trim(entity_id)
        logger.debug(f"[{entity_id}] Stored reading {snapshot.date} {snapshot.time}")
        return AppendResult(stored=True, trimmed=trimmed)

    def _trim(self, entity_id: str) -> int:
        """Drop the oldest snapshots beyond the retention cap."""
        dates = self._segment_dates(entity_id)
        segments = {date: self._read_segment(entity_id, date) for date in dates}
        excess = sum(len(s) for s in segments.values()) - self.retention_max
        if excess <= 0:
            return 0

        trimmed = 0
        for date in dates:
            if excess <= 0:
                break
            segment = segments[date]
            drop = min(excess, len(segment))
            self._write_segment(entity_id, date, segment[drop:])
            excess -= drop
            trimmed += drop

        logger.debug(f"[{entity_id}] Trimmed {trimmed} old readings")
        return trimmed

    def latest(self, entity_id: str) -> Optional[Snapshot]:
        """Most recent snapshot, or None if nothing was recorded yet."""
        raw = self._read_file(self._latest_path(entity_id))
        if raw is None:
            return None
        try:
            return Snapshot.model_validate(raw)
        except PydanticValidationError as e:
            raise StoreError(f"Corrupt latest record for {entity_id}: {e}")

    def history(
        self,
        entity_id: str,
        window_days: int,
        now: Optional[datetime] = None,
    ) -> List[Snapshot]:
        """Snapshots captured within the last ``window_days``, oldest first.

        The window is recomputed against the current time on every call.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        cutoff = now - timedelta(days=window_days)
        # Day segments are named in collector-local time; one day of slack
        # keeps segments straddling the UTC cutoff
        first_date = (cutoff - timedelta(days=1)).strftime("%Y-%m-%d")

        snapshots = []
        for date in self._segment_dates(entity_id):
            if date < first_date:
                continue
            snapshots.extend(s for s in self._read_segment(entity_id, date) if s.timestamp >= cutoff)

        snapshots.sort(key=lambda s: s.timestamp)
        return snapshots

    def count(self, entity_id: str) -> int:
        """Number of stored snapshots for a dormitory."""
        return sum(len(self._read_segment(entity_id, d)) for d in self._segment_dates(entity_id))

    def entity_ids(self) -> List[str]:
        """Dormitories that have a latest record on disk."""
        if not self.data_dir.exists():
            return []
        suffix = f"_{LATEST_SUFFIX}.json"
        return sorted(p.name[: -len(suffix)] for p in self.data_dir.glob(f"*{suffix}"))
