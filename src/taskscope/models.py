"""Data models for taskscope."""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

TELEMETRY_HEADER = "Timestamp\tProcess ID\tType\tName\tCPU (%)\tMemory (MB)\tNetwork (KB/s)"


class ProcessType(Enum):
    """Kinds of process reported by a snapshot source."""

    BROWSER = "browser"
    RENDERER = "renderer"
    GPU = "gpu"
    EXTENSION = "extension"
    PLUGIN = "plugin"
    WORKER = "worker"
    SERVICE_WORKER = "service_worker"
    UTILITY = "utility"
    NOTIFICATION = "notification"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "ProcessType":
        """Parse a raw type value, falling back to OTHER."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.OTHER


@dataclass(slots=True, frozen=True)
class ProcessTask:
    """A task (tab, extension, worker...) hosted by a process."""

    title: str


def _number(value: Any, cast: type = float) -> Any:
    """Coerce a raw numeric field, defaulting to zero when unusable."""
    if value is None or isinstance(value, bool):
        return cast(0)
    try:
        number = cast(value)
    except (TypeError, ValueError, OverflowError):
        return cast(0)
    if number != number or number < 0:  # NaN or negative
        return cast(0)
    return number


@dataclass(slots=True, frozen=True)
class ProcessRecord:
    """Immutable view of one process in a snapshot."""

    pid: int
    cpu_percent: float = 0.0
    private_memory: int = 0  # Bytes
    network_kbps: float = 0.0
    type: ProcessType = ProcessType.OTHER
    tasks: tuple[ProcessTask, ...] = ()
    os_process_id: int = 0

    @classmethod
    def from_raw(cls, pid: int, raw: Mapping[str, Any] | None) -> "ProcessRecord":
        """
        Build a record from a loosely-typed mapping.

        Accepts both the snake_case field names and the camelCase names used
        by browser process APIs. Malformed values are normalized to defaults,
        the record is never rejected.
        """
        raw = raw if isinstance(raw, Mapping) else {}

        def pick(*keys: str) -> Any:
            for key in keys:
                if raw.get(key) is not None:
                    return raw[key]
            return None

        raw_tasks = pick("tasks") or ()
        tasks = []
        if isinstance(raw_tasks, (list, tuple)):
            for task in raw_tasks:
                if isinstance(task, ProcessTask):
                    tasks.append(task)
                elif isinstance(task, Mapping):
                    tasks.append(ProcessTask(title=str(task.get("title") or "")))

        return cls(
            pid=pid,
            cpu_percent=_number(pick("cpu_percent", "cpuPercent", "cpu")),
            private_memory=_number(
                pick("private_memory", "privateMemoryBytes", "privateMemory"), int
            ),
            network_kbps=_number(pick("network_kbps", "networkKBps", "network")),
            type=ProcessType.parse(pick("type")),
            tasks=tuple(tasks),
            os_process_id=_number(pick("os_process_id", "osProcessId"), int),
        )


ProcessSnapshot = dict[int, ProcessRecord]


def parse_snapshot(raw: Mapping[Any, Any]) -> ProcessSnapshot:
    """Validate a raw snapshot mapping at the pipeline boundary."""
    snapshot: ProcessSnapshot = {}
    for key, value in raw.items():
        try:
            pid = int(key)
        except (TypeError, ValueError):
            logger.debug("Dropping snapshot entry with non-integer id %r", key)
            continue
        if isinstance(value, ProcessRecord):
            snapshot[pid] = value
        else:
            snapshot[pid] = ProcessRecord.from_raw(pid, value)
    return snapshot


@dataclass(slots=True, frozen=True)
class TelemetryRow:
    """One formatted telemetry line. Numeric fields are one-decimal strings."""

    timestamp: str
    process_id: int
    type: str
    name: str
    cpu: str
    memory_mb: str
    network: str

    @property
    def cpu_percent(self) -> float:
        """CPU usage as a number, for filtering and sorting."""
        try:
            return float(self.cpu)
        except ValueError:
            return 0.0

    def to_line(self) -> str:
        """Render the row as a tab-separated line."""
        return "\t".join(
            (
                self.timestamp,
                str(self.process_id),
                self.type,
                self.name,
                self.cpu,
                self.memory_mb,
                self.network,
            )
        )

    @classmethod
    def from_line(cls, line: str) -> "TelemetryRow":
        """Parse a line produced by to_line()."""
        parts = line.split("\t")
        if len(parts) != 7:
            raise ValueError(f"Expected 7 tab-separated fields, got {len(parts)}")
        timestamp, process_id, type_, name, cpu, memory_mb, network = parts
        return cls(
            timestamp=timestamp,
            process_id=int(process_id),
            type=type_,
            name=name,
            cpu=cpu,
            memory_mb=memory_mb,
            network=network,
        )


@dataclass(slots=True, frozen=True)
class RollingLog:
    """The persisted telemetry table: a fixed header plus rows."""

    rows: tuple[TelemetryRow, ...] = ()
    header: str = TELEMETRY_HEADER

    def __len__(self) -> int:
        return len(self.rows)

    @property
    def is_empty(self) -> bool:
        return not self.rows

    def to_text(self) -> str:
        """Serialize as header line followed by one line per row."""
        return "\n".join([self.header, *(row.to_line() for row in self.rows)])

    @classmethod
    def from_text(cls, text: str) -> "RollingLog":
        """Parse a blob written by to_text(). Blank lines are ignored."""
        lines = [line for line in text.split("\n") if line.strip()]
        if not lines:
            return cls()
        if lines[0] == TELEMETRY_HEADER:
            lines = lines[1:]
        return cls(rows=tuple(TelemetryRow.from_line(line) for line in lines))


class ChatRole(Enum):
    """Author of a chat message."""

    USER = "user"
    ASSISTANT = "assistant"


@dataclass(slots=True, frozen=True)
class ChatMessage:
    """One entry in the append-only conversation history."""

    role: ChatRole
    content: str


class SessionStatus(Enum):
    """Lifecycle states of the local model session."""

    CHECKING = "checking"
    READY = "ready"
    DOWNLOADING = "downloading"
    UNAVAILABLE = "unavailable"
    ERROR = "error"

