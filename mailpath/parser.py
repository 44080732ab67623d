"""Line parser — syslog-style MTA lines into frozen LogEvent records."""

import logging
import re
from datetime import datetime

from mailpath.models import LogEvent

logger = logging.getLogger(__name__)

LINE_PATTERN = re.compile(
    r"^(?:<\d{1,3}>)?"
    r"(?P<timestamp>"
    r"[A-Z][a-z]{2}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2}"
    r"|\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d{1,6})?(?:Z|[+-]\d{2}:?\d{2})?"
    r")\s+"
    r"(?P<host>\S+)\s+"
    r"(?P<tag>[^\s\[:]+)(?:\[(?P<pid>\d+)\])?:\s"
    r"(?:\[ID\s+\d+\s+[\w.]+\]\s+)?"
    r"(?P<message>.*)$"
)

QUEUE_ID_PATTERN = re.compile(r"^(?P<qid>[0-9A-Z]{5,20}): (?P<payload>.*)$")

NO_QUEUE = "NOQUEUE"

SYSLOG_TIMESTAMP_FORMAT = "%Y %b %d %H:%M:%S"

MONTHS = {
    name: number
    for number, name in enumerate(
        ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"), 1
    )
}

# Leap year, so Feb 29 always parses while only months are being tracked.
SCAN_YEAR = 2000


def parse_timestamp(text: str, year: int | None = None) -> datetime | None:
    """Parse either a traditional syslog or an RFC 3339 timestamp.

    Syslog timestamps carry no year, so ``year`` (default: this year) is used.
    RFC 3339 timestamps with an offset are converted to local time, the clock
    syslog timestamps are written in, and returned naive.
    """
    if text[:1].isdigit():
        try:
            ts = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if ts.tzinfo is not None:
            ts = ts.astimezone().replace(tzinfo=None)
        return ts
    if year is None:
        year = datetime.now().year
    try:
        return datetime.strptime(f"{year} {' '.join(text.split())}", SYSLOG_TIMESTAMP_FORMAT)
    except ValueError:
        return None


def _build_event(match: re.Match, raw: str, source: str, line_no: int, year: int | None) -> LogEvent | None:
    timestamp = parse_timestamp(match.group("timestamp"), year)
    if timestamp is None:
        return None

    message = match.group("message")
    queue_id = None
    payload = message
    qid_match = QUEUE_ID_PATTERN.match(message)
    if qid_match and qid_match.group("qid") != NO_QUEUE:
        queue_id = qid_match.group("qid")
        payload = qid_match.group("payload")

    return LogEvent(
        timestamp=timestamp,
        host=match.group("host"),
        tag=match.group("tag"),
        pid=match.group("pid"),
        queue_id=queue_id,
        payload=payload,
        raw=raw,
        source=source,
        line_no=line_no,
    )


def parse_line(
    line: str,
    source: str = "",
    line_no: int = 0,
    year: int | None = None,
) -> LogEvent | None:
    """Parse a single log line into a LogEvent. Returns None for unrecognized lines."""
    stripped = line.rstrip("\r\n")
    match = LINE_PATTERN.match(stripped)
    if not match:
        return None
    return _build_event(match, stripped, source, line_no, year)


class YearTracker:
    """Supplies the year for year-less syslog lines of one source.

    ``year`` is the year of the source's first syslog line. A month stepping
    back by more than six months is a December -> January boundary: it is
    counted in ``rollovers`` and, with ``follow_rollover``, bumps the year.
    """

    def __init__(self, year: int | None = None, follow_rollover: bool = True):
        self.year = year if year is not None else datetime.now().year
        self.follow_rollover = follow_rollover
        self.rollovers = 0
        self.last_month: int | None = None

    def parse(self, line: str, source: str = "", line_no: int = 0) -> LogEvent | None:
        stripped = line.rstrip("\r\n")
        match = LINE_PATTERN.match(stripped)
        if not match:
            return None

        month = MONTHS.get(match.group("timestamp")[:3])
        if month is not None:
            if self.last_month is not None and self.last_month - month > 6:
                self.rollovers += 1
                if self.follow_rollover:
                    self.year += 1
                    logger.debug("%s:%d: year rollover, now assuming %d", source, line_no, self.year)
            self.last_month = month
        return _build_event(match, stripped, source, line_no, self.year)

    @property
    def span(self) -> tuple[int, int] | None:
        """(rollovers, month of the last syslog line), None without syslog lines."""
        if self.last_month is None:
            return None
        return self.rollovers, self.last_month


def _newest_month(end_months: list[int]) -> int:
    # sources ending in both late and early months straddle a new year
    latest = max(end_months)
    wrapped = [m for m in end_months if latest - m > 6]
    return max(wrapped) if wrapped else latest


def start_years(
    spans: list[tuple[int, int] | None],
    year: int | None = None,
    today: datetime | None = None,
) -> list[int]:
    """Year of the first syslog line of each source, under one policy for all.

    ``spans`` are the ``YearTracker.span`` values gathered per source. The
    newest syslog line of the whole set falls in ``year``; without a year it
    falls in today's year, and a source ending after the current month ends
    in the previous year. Each source is then placed so that its last line is
    the newest it can be, and its rollovers count back from there.
    """
    if year is None:
        today = today or datetime.now()
        newest_year, newest_month = today.year, today.month
    else:
        end_months = [s[1] for s in spans if s is not None]
        newest_year = year
        newest_month = _newest_month(end_months) if end_months else 12

    years = []
    for span in spans:
        if span is None:
            years.append(newest_year)
            continue
        rollovers, last_month = span
        end_year = newest_year if last_month <= newest_month else newest_year - 1
        years.append(end_year - rollovers)
    return years
