"""Data model shared by the parser, correlator, merger and renderer."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Iterator


@dataclass(frozen=True)
class LogEvent:
    timestamp: datetime
    host: str
    tag: str              # e.g. "postfix/smtpd"
    pid: str | None
    queue_id: str | None  # absent on connection-level lines
    payload: str          # verbatim text after the queue id
    raw: str              # original line, no trailing newline
    source: str = ""      # origin label of the source
    line_no: int = 0      # 1-based position within the source


@dataclass
class Source:
    """One input log stream. ``opener`` returns a fresh line iterator per pass."""

    label: str
    opener: Callable[[], Iterable[str]]

    def lines(self) -> Iterator[str]:
        return iter(self.opener())

    @classmethod
    def from_lines(cls, label: str, lines: Iterable[str]) -> "Source":
        data = list(lines)
        return cls(label=label, opener=lambda: iter(data))


@dataclass
class SourceReport:
    label: str
    lines_read: int = 0
    unrecognized: int = 0
    matched: int = 0
    error: str | None = None


@dataclass
class TraceResult:
    message_id: str
    events: list[LogEvent] = field(default_factory=list)
    queue_ids: set[str] = field(default_factory=set)
    edges: dict[str, set[str]] = field(default_factory=dict)
    roots: set[str] = field(default_factory=set)
    reports: list[SourceReport] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.events)

    def as_tuples(self) -> list[tuple[datetime, str | None, str, str]]:
        """(timestamp, queue_id, tag, payload) per event, in trace order."""
        return [(e.timestamp, e.queue_id, e.tag, e.payload) for e in self.events]

    def predecessors(self, queue_id: str) -> list[str]:
        return sorted(p for p, children in self.edges.items() if queue_id in children)

    def successors(self, queue_id: str) -> list[str]:
        return sorted(self.edges.get(queue_id, ()))
