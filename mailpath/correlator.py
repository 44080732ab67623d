"""Identifier correlator — decides which events belong to a message's path.

Entry into the path is a bootstrap line whose payload contains the target
message-id. From there the queue id of that line, and every queue id that a
derived-identifier pattern links to it, is followed.

Two ways of driving the correlator are offered:

* ``correlate()`` makes the streaming decision for one event against a live
  ``CorrelationState`` (bootstrap, continuation, derived discovery).
* ``discover()`` extracts order-independent facts from one event. The merger
  fans these in from every source, then ``CorrelationState.resolve()`` closes
  the id set over the collected edges before the collection pass.
"""

import logging
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable

from mailpath.models import LogEvent

logger = logging.getLogger(__name__)

NEXT = "next"          # captured id continues the event's id
PREVIOUS = "previous"  # event's id continues the captured id

QID = r"(?P<qid>[0-9A-Z]{5,20})"

DEFAULT_IGNORE_TAGS = ("clamsmtp", "postlicyd")


@dataclass(frozen=True)
class DerivedPattern:
    name: str
    regex: re.Pattern
    direction: str = NEXT

    @classmethod
    def build(cls, name: str, pattern: str, direction: str = NEXT) -> "DerivedPattern":
        """Compile ``pattern``; it must define a ``qid`` group."""
        if direction not in (NEXT, PREVIOUS):
            raise ValueError(f"direction must be '{NEXT}' or '{PREVIOUS}', got {direction!r}")
        regex = re.compile(pattern)
        if "qid" not in regex.groupindex:
            raise ValueError(f"pattern {name!r} has no (?P<qid>...) group")
        return cls(name=name, regex=regex, direction=direction)


DEFAULT_DERIVED_PATTERNS = (
    DerivedPattern.build("queued-as", rf"\bqueued as {QID}\b"),
    DerivedPattern.build("forwarded-as", rf"\bforwarded as {QID}\b"),
    DerivedPattern.build("bounce", rf"^sender non-delivery notification: {QID}\b"),
    DerivedPattern.build("delay-notice", rf"^sender delay notification: {QID}\b"),
    DerivedPattern.build("dsn", rf"^sender delivery status notification: {QID}\b"),
    DerivedPattern.build("reinjected", rf"\borig_queue_id={QID}\b", PREVIOUS),
)


@dataclass(frozen=True)
class Discovery:
    """Facts one event contributes to the identifier graph."""

    bootstrap_id: str | None = None
    edges: tuple[tuple[str, str], ...] = ()  # (parent, child)


@dataclass
class CorrelationState:
    """Run-scoped working memory. Ids and edges are only ever added."""

    target_message_id: str
    known_queue_ids: set[str] = field(default_factory=set)
    roots: set[str] = field(default_factory=set)
    edges: dict[str, set[str]] = field(default_factory=dict)
    matched_events: list[LogEvent] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def absorb(self, discoveries: Iterable[Discovery]) -> None:
        """Fan-in point for facts gathered by concurrent scanners."""
        with self.lock:
            for d in discoveries:
                if d.bootstrap_id is not None:
                    self.roots.add(d.bootstrap_id)
                    self.known_queue_ids.add(d.bootstrap_id)
                for parent, child in d.edges:
                    self.edges.setdefault(parent, set()).add(child)

    def resolve(self) -> set[str]:
        """Close ``known_queue_ids`` over the collected edges.

        Edges are followed from parent to child only, starting at the ids
        already known. Edges whose parent is not on the path are dropped.
        """
        with self.lock:
            pending = deque(sorted(self.known_queue_ids))
            while pending:
                qid = pending.popleft()
                for child in sorted(self.edges.get(qid, ())):
                    if child not in self.known_queue_ids:
                        self.known_queue_ids.add(child)
                        pending.append(child)
            self.edges = {
                parent: set(children)
                for parent, children in self.edges.items()
                if parent in self.known_queue_ids
            }
            return set(self.known_queue_ids)

    def matches(self, event: LogEvent) -> bool:
        """Read-only membership test used once the id set is stable."""
        if event.queue_id is not None and event.queue_id in self.known_queue_ids:
            return True
        return self.target_message_id in event.payload

    def _link(self, parent: str, child: str) -> None:
        self.edges.setdefault(parent, set()).add(child)
        if child not in self.known_queue_ids:
            logger.debug("derived queue id %s from %s", child, parent)
            self.known_queue_ids.add(child)


class Correlator:
    def __init__(
        self,
        patterns: Iterable[DerivedPattern] = DEFAULT_DERIVED_PATTERNS,
        ignore_tags: Iterable[str] = DEFAULT_IGNORE_TAGS,
    ):
        self.patterns = tuple(patterns)
        self.ignore_tags = tuple(ignore_tags)

    def is_ignored(self, event: LogEvent) -> bool:
        """True for tags of programs that never log the message-id."""
        return any(event.tag == t or event.tag.startswith(t + "/") for t in self.ignore_tags)

    def derived_edges(self, event: LogEvent) -> list[tuple[str, str]]:
        """Return (parent, child) edges the event's payload reveals."""
        if event.queue_id is None:
            return []
        edges = []
        for pattern in self.patterns:
            for match in pattern.regex.finditer(event.payload):
                other = match.group("qid")
                if other == event.queue_id:
                    continue
                if pattern.direction == NEXT:
                    edges.append((event.queue_id, other))
                else:
                    edges.append((other, event.queue_id))
        return edges

    def discover(self, event: LogEvent, target_message_id: str) -> Discovery | None:
        """Stateless pass-one extraction of bootstrap ids and edges."""
        if self.is_ignored(event) or event.queue_id is None:
            return None
        bootstrap_id = event.queue_id if target_message_id in event.payload else None
        edges = tuple(self.derived_edges(event))
        if bootstrap_id is None and not edges:
            return None
        return Discovery(bootstrap_id=bootstrap_id, edges=edges)

    def belongs(self, state: CorrelationState, event: LogEvent) -> bool:
        """Pass-two decision against a resolved state. Does not mutate it."""
        return not self.is_ignored(event) and state.matches(event)

    def correlate(self, state: CorrelationState, event: LogEvent) -> bool:
        """Single-stream decision: add the event to the path if it belongs there.

        For events arriving in one ordered stream (a single source, or an
        already merged one), where a derived id is only followed once its
        parent has been seen. The merger does not call this; it combines the
        same two steps, ``discover()`` and ``matches()``, across its passes.

        Returns True when the event was appended to ``state.matched_events``.
        """
        if self.is_ignored(event):
            return False

        found = self.discover(event, state.target_message_id)
        with state.lock:
            if found is not None:
                if found.bootstrap_id is not None:
                    logger.debug("bootstrap: %s carries %s", found.bootstrap_id, state.target_message_id)
                    state.roots.add(found.bootstrap_id)
                    state.known_queue_ids.add(found.bootstrap_id)
                for parent, child in found.edges:
                    if parent in state.known_queue_ids:
                        state._link(parent, child)

            if not state.matches(event):
                return False
            state.matched_events.append(event)
            return True
