"""Multi-source merger — two concurrent passes over every source, then a k-way merge.

Pass one scans every source for bootstrap lines and derived-id edges and fans
the facts into a single CorrelationState, which is then resolved. Pass two
rescans every source against the now-stable id set and buffers the matching
events per source. The buffers are merged by (timestamp, label, line number),
so the trace does not depend on argument order or on worker scheduling.

Year-less syslog timestamps get their years between the passes, from the
month spans pass one records, so one instant gets one year in every source.
"""

import heapq
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Iterator

from mailpath.correlator import (
    DEFAULT_DERIVED_PATTERNS,
    DEFAULT_IGNORE_TAGS,
    CorrelationState,
    Correlator,
    DerivedPattern,
    Discovery,
)
from mailpath.models import LogEvent, Source, SourceReport, TraceResult
from mailpath.parser import SCAN_YEAR, YearTracker, start_years
from mailpath.sources import READ_ERRORS, SourceError

logger = logging.getLogger(__name__)


class NoReadableSourcesError(Exception):
    """Every supplied source failed to read."""


def _scan(source: Source, tracker: YearTracker, report: SourceReport) -> Iterator[LogEvent]:
    """Yield parsed events of one source, counting lines on ``report``.

    Read errors are re-raised as SourceError.
    """
    try:
        for line_no, line in enumerate(source.lines(), 1):
            report.lines_read += 1
            event = tracker.parse(line, source=source.label, line_no=line_no)
            if event is None:
                if report.unrecognized == 0 and line.strip():
                    logger.debug("%s:%d: unable to parse line: %s",
                                 source.label, line_no, line.rstrip("\n"))
                report.unrecognized += 1
                continue
            yield event
    except READ_ERRORS as e:
        raise SourceError(source.label, str(e) or type(e).__name__) from e


def _event_key(event: LogEvent):
    return (event.timestamp, event.source, event.line_no)


class Merger:
    def __init__(
        self,
        patterns: Iterable[DerivedPattern] = DEFAULT_DERIVED_PATTERNS,
        ignore_tags: Iterable[str] = DEFAULT_IGNORE_TAGS,
        workers: int = 4,
        year: int | None = None,
    ):
        self.correlator = Correlator(patterns, ignore_tags)
        self.workers = max(1, workers)
        self.year = year

    # -- pass one ---------------------------------------------------------

    def _discover_source(
        self, source: Source, message_id: str
    ) -> tuple[list[Discovery], tuple[int, int] | None, str | None]:
        discoveries = []
        report = SourceReport(label=source.label)
        # months only; years are settled once every source has been seen
        tracker = YearTracker(SCAN_YEAR, follow_rollover=False)
        try:
            for event in _scan(source, tracker, report):
                found = self.correlator.discover(event, message_id)
                if found is not None:
                    discoveries.append(found)
        except SourceError as e:
            return [], None, e.reason
        return discoveries, tracker.span, None

    def discover_pass(
        self, state: CorrelationState, sources: list[Source]
    ) -> tuple[dict[int, str], list[tuple[int, int] | None]]:
        """Populate ``state`` from every source.

        Returns ({source index: error}, year span per source).
        """
        errors = {}
        spans = []
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            results = executor.map(
                lambda s: self._discover_source(s, state.target_message_id), sources
            )
            for index, (discoveries, span, error) in enumerate(results):
                spans.append(span)
                if error is not None:
                    logger.warning("Skipping unreadable source %s: %s", sources[index].label, error)
                    errors[index] = error
                    continue
                state.absorb(discoveries)

        known = state.resolve()
        logger.info("Pass 1: %d queue id(s) on the path of %s", len(known), state.target_message_id)
        return errors, spans

    # -- pass two ---------------------------------------------------------

    def _collect_source(
        self, source: Source, state: CorrelationState, year: int
    ) -> tuple[list[LogEvent], SourceReport]:
        report = SourceReport(label=source.label)
        matched = []
        try:
            for event in _scan(source, YearTracker(year), report):
                if self.correlator.belongs(state, event):
                    matched.append(event)
        except SourceError as e:
            logger.warning("Source %s became unreadable: %s", source.label, e.reason)
            report.error = e.reason
            return [], report
        report.matched = len(matched)
        matched.sort(key=_event_key)
        return matched, report

    def collect_pass(
        self, state: CorrelationState, sources: list[Source], years: list[int]
    ) -> tuple[list[list[LogEvent]], list[SourceReport]]:
        """Rescan ``sources``; ``years`` holds the year of each one's first syslog line."""
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            results = list(executor.map(
                lambda pair: self._collect_source(pair[0], state, pair[1]), zip(sources, years)
            ))
        buffers = [events for events, _ in results]
        reports = [report for _, report in results]
        return buffers, reports

    # -- merge ------------------------------------------------------------

    @staticmethod
    def merge(buffers: list[list[LogEvent]]) -> list[LogEvent]:
        """Stable k-way merge of per-source buffers sorted by _event_key.

        Buffers are passed in argument order, so sources sharing a label fall
        back to that order.
        """
        return list(heapq.merge(*buffers, key=_event_key))

    # -- run --------------------------------------------------------------

    def run(self, message_id: str, sources: list[Source]) -> TraceResult:
        state = CorrelationState(target_message_id=message_id)
        errors, spans = self.discover_pass(state, sources)
        if sources and len(errors) == len(sources):
            raise NoReadableSourcesError(
                f"None of the {len(sources)} source(s) could be read"
            )

        readable = [i for i in range(len(sources)) if i not in errors]
        years = start_years([spans[i] for i in readable], self.year)
        buffers, reports = self.collect_pass(state, [sources[i] for i in readable], years)
        events = self.merge(buffers)

        for index, error in errors.items():
            reports.append(SourceReport(label=sources[index].label, error=error))
        reports.sort(key=lambda r: r.label)

        if not events:
            return TraceResult(message_id=message_id, reports=reports)
        return TraceResult(
            message_id=message_id,
            events=events,
            queue_ids={e.queue_id for e in events if e.queue_id is not None},
            edges={p: set(c) for p, c in state.edges.items()},
            roots=set(state.roots),
            reports=reports,
        )


def trace(
    message_id: str,
    sources: list[Source],
    *,
    patterns: Iterable[DerivedPattern] = DEFAULT_DERIVED_PATTERNS,
    ignore_tags: Iterable[str] = DEFAULT_IGNORE_TAGS,
    workers: int = 4,
    year: int | None = None,
    bracket_fallback: bool = True,
) -> TraceResult:
    """Reconstruct the path of ``message_id`` through ``sources``.

    When nothing is found for a bracketed id such as ``<foo@bar>`` and
    ``bracket_fallback`` is set, the search is retried as ``foo@bar``, which
    is how a header written without angle brackets shows up in the log.
    ``year`` is the year of the newest syslog line; without it the newest line
    is placed no later than the current month.
    Raises NoReadableSourcesError when no source could be read at all.
    """
    if not sources:
        raise NoReadableSourcesError("No sources given")

    merger = Merger(patterns, ignore_tags, workers=workers, year=year)
    result = merger.run(message_id, sources)

    bracketed = len(message_id) > 2 and message_id[0] == "<" and message_id[-1] == ">"
    if not result.found and bracket_fallback and bracketed:
        bare = message_id[1:-1]
        logger.warning("Found no mail with message-id %s, trying with %s", message_id, bare)
        retry = merger.run(bare, sources)
        if retry.found:
            return retry

    return result
