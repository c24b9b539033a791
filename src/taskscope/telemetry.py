"""Telemetry formatting and the bounded rolling log."""

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from taskscope.errors import StorageFailure
from taskscope.models import (
    ProcessRecord,
    RollingLog,
    TelemetryRow,
    parse_snapshot,
)
from taskscope.storage import KeyValueStore

logger = logging.getLogger(__name__)

LOG_KEY = "processLogs"
DEFAULT_MAX_ROWS = 12
BYTES_PER_MB = 1024 * 1024


def utc_timestamp() -> str:
    """Current time as an ISO 8601 UTC string with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _one_decimal(value: float) -> str:
    return f"{value:.1f}"


def _clean(text: str) -> str:
    # Tabs and newlines would break the persisted table layout
    return " ".join(text.split())


def resolve_name(record: ProcessRecord) -> str:
    """First task title, else the process type, else 'unnamed'."""
    for task in record.tasks[:1]:
        title = _clean(task.title)
        if title:
            return title
    if record.type is not None and record.type.value:
        return record.type.value
    return "unnamed"


def format_record(record: ProcessRecord, timestamp: str) -> TelemetryRow:
    """Format a single process record into a telemetry row."""
    return TelemetryRow(
        timestamp=timestamp,
        process_id=record.pid,
        type=record.type.value,
        name=resolve_name(record),
        cpu=_one_decimal(record.cpu_percent),
        memory_mb=_one_decimal(record.private_memory / BYTES_PER_MB),
        network=_one_decimal(record.network_kbps),
    )


def format_snapshot(
    snapshot: Mapping[Any, Any],
    timestamp: str | None = None,
) -> list[TelemetryRow]:
    """
    Convert a snapshot into telemetry rows, ordered by ascending process id.

    Raw mappings are validated first, so malformed records come out with
    default values rather than being dropped. All rows of one call share the
    same timestamp.
    """
    records = parse_snapshot(snapshot)
    stamp = timestamp or utc_timestamp()
    return [format_record(records[pid], stamp) for pid in sorted(records)]


class RollingLogStore:
    """
    Persists the latest formatted telemetry, bounded in row count.

    The stored value is a single text blob (header plus one line per row)
    that each capture overwrites entirely. Compaction bounds the row count of
    that blob; it does not keep history across captures.
    """

    def __init__(
        self,
        store: KeyValueStore,
        max_rows: int = DEFAULT_MAX_ROWS,
        key: str = LOG_KEY,
    ) -> None:
        if max_rows < 1:
            raise ValueError("max_rows must be at least 1")
        self._store = store
        self._max_rows = max_rows
        self._key = key

    @property
    def max_rows(self) -> int:
        return self._max_rows

    def capture(self, snapshot: Mapping[Any, Any], timestamp: str | None = None) -> RollingLog:
        """
        Format a snapshot and replace the persisted rows with it.

        Raises:
            StorageFailure: the write failed; the previous value is untouched.
        """
        log = RollingLog(rows=tuple(format_snapshot(snapshot, timestamp)))
        try:
            self._store.set(self._key, log.to_text())
        except StorageFailure:
            logger.error("Error logging process data (%d rows)", len(log))
            raise
        logger.debug("Stored process logs: %d rows", len(log))
        return log

    def compact(self) -> RollingLog:
        """Keep only the last max_rows rows. A no-op when already within bound."""
        log = self.read()
        if len(log) <= self._max_rows:
            return log

        compacted = RollingLog(rows=log.rows[-self._max_rows :], header=log.header)
        try:
            self._store.set(self._key, compacted.to_text())
        except StorageFailure as e:
            logger.error("Error compacting process logs: %s", e)
            return log
        logger.debug("Compacted process logs from %d to %d rows", len(log), len(compacted))
        return compacted

    def read(self) -> RollingLog:
        """Return the persisted log, or a header-only log when nothing is usable."""
        try:
            blob = self._store.get(self._key)
        except StorageFailure as e:
            logger.error("Error retrieving process logs: %s", e)
            return RollingLog()

        if not blob:
            return RollingLog()
        if not isinstance(blob, str):
            logger.warning("Ignoring non-text process log of type %s", type(blob).__name__)
            return RollingLog()
        try:
            return RollingLog.from_text(blob)
        except ValueError as e:
            logger.warning("Ignoring corrupt process log: %s", e)
            return RollingLog()
