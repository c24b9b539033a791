"""Prompt assembly under size constraints."""

import math
from dataclasses import dataclass
from enum import Enum

from taskscope.models import RollingLog

NO_DATA_PLACEHOLDER = "No process data available"
DATA_HEADING = "Current Process Data:"
CLOSING_INSTRUCTION = "Analyze the above process data and answer the question."
DEFAULT_TRUNCATE_CHARS = 50


class FilterMode(Enum):
    FULL = "full"
    TOP_BY_CPU = "top_by_cpu"


@dataclass(slots=True, frozen=True)
class FilterPolicy:
    """Which telemetry rows make it into a prompt."""

    mode: FilterMode = FilterMode.FULL
    limit: int = 0
    cpu_threshold: float = 0.0

    @classmethod
    def full(cls) -> "FilterPolicy":
        return cls(FilterMode.FULL)

    @classmethod
    def top_by_cpu(cls, limit: int, cpu_threshold: float = 0.0) -> "FilterPolicy":
        """Rows above cpu_threshold, busiest first, at most `limit` of them."""
        if limit < 1:
            raise ValueError("limit must be at least 1")
        return cls(FilterMode.TOP_BY_CPU, limit=limit, cpu_threshold=cpu_threshold)

    def apply(self, log: RollingLog) -> RollingLog:
        if self.mode is FilterMode.FULL:
            return log
        busy = [row for row in log.rows if row.cpu_percent > self.cpu_threshold]
        # sorted() is stable, so equal CPU keeps the stored order
        busy = sorted(busy, key=lambda row: row.cpu_percent, reverse=True)
        return RollingLog(rows=tuple(busy[: self.limit]), header=log.header)


@dataclass(slots=True, frozen=True)
class AssembledPrompt:
    text: str
    estimated_tokens: int


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


def truncate_question(question: str, limit: int = DEFAULT_TRUNCATE_CHARS) -> str:
    """Shorten a question for the fallback retry prompt."""
    return question[:limit]


def render_telemetry(log: RollingLog | None) -> str:
    if log is None or log.is_empty:
        return NO_DATA_PLACEHOLDER
    return log.to_text()


def assemble(
    instructions: str,
    telemetry: RollingLog | None,
    question: str,
    policy: FilterPolicy | None = None,
) -> AssembledPrompt:
    """
    Build the prompt text sent to a model backend.

    Missing telemetry, or telemetry with no row left after filtering, renders
    as an explicit placeholder so the prompt always has the same shape. The
    token estimate is a UI hint, not a guarantee against backend limits.
    """
    policy = policy or FilterPolicy.full()
    filtered = policy.apply(telemetry) if telemetry is not None else None

    sections = []
    if instructions.strip():
        sections.append(instructions.strip())
    sections.append(f"{DATA_HEADING}\n{render_telemetry(filtered)}")
    sections.append(f"User Question: {question}")
    sections.append(CLOSING_INSTRUCTION)

    text = "\n\n".join(sections)
    return AssembledPrompt(text=text, estimated_tokens=estimate_tokens(text))
