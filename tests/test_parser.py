"""Tests for mailpath/parser.py"""

import unittest
from datetime import datetime, timedelta, timezone

from mailpath.parser import LINE_PATTERN, YearTracker, parse_line, parse_timestamp, start_years


def _local(*args) -> datetime:
    """Naive local time of a UTC instant."""
    return datetime(*args, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)


class TestLinePattern(unittest.TestCase):
    """Verify the compiled regex matches expected syslog shapes."""

    def test_matches_traditional_syslog(self):
        line = "Jan 10 10:00:01 mx1 postfix/qmgr[102]: ABC123: removed"
        self.assertIsNotNone(LINE_PATTERN.match(line))

    def test_matches_space_padded_day(self):
        line = "Mar  3 10:00:01 mx1 postfix/qmgr[102]: ABC123: removed"
        self.assertIsNotNone(LINE_PATTERN.match(line))

    def test_no_match_on_empty(self):
        self.assertIsNone(LINE_PATTERN.match(""))

    def test_no_match_on_plain_text(self):
        self.assertIsNone(LINE_PATTERN.match("just some random text"))

    def test_captures_groups(self):
        m = LINE_PATTERN.match("Jan 10 10:00:01 mx1 postfix/smtpd[100]: connect from a[192.0.2.1]")
        self.assertEqual(m.group("host"), "mx1")
        self.assertEqual(m.group("tag"), "postfix/smtpd")
        self.assertEqual(m.group("pid"), "100")
        self.assertEqual(m.group("message"), "connect from a[192.0.2.1]")


class TestParseTimestamp(unittest.TestCase):
    def test_syslog_uses_given_year(self):
        self.assertEqual(parse_timestamp("Jan 10 10:00:01", 2023), datetime(2023, 1, 10, 10, 0, 1))

    def test_syslog_defaults_to_current_year(self):
        self.assertEqual(parse_timestamp("Jan 10 10:00:01").year, datetime.now().year)

    def test_rfc3339_offset_converted_to_local_time(self):
        ts = parse_timestamp("2024-01-15T10:00:01.250000+02:00")
        self.assertEqual(ts, _local(2024, 1, 15, 8, 0, 1, 250000))
        self.assertIsNone(ts.tzinfo)

    def test_rfc3339_zulu(self):
        self.assertEqual(parse_timestamp("2024-01-15T10:00:01Z"), _local(2024, 1, 15, 10, 0, 1))

    def test_rfc3339_different_zones_compare_by_instant(self):
        east = parse_timestamp("2024-03-03T12:00:00+02:00")
        utc = parse_timestamp("2024-03-03T10:00:01+00:00")
        self.assertLess(east, utc)
        self.assertEqual(utc - east, timedelta(seconds=1))

    def test_rfc3339_without_offset_kept_as_is(self):
        self.assertEqual(parse_timestamp("2024-01-15T10:00:01"), datetime(2024, 1, 15, 10, 0, 1))

    def test_invalid_date(self):
        self.assertIsNone(parse_timestamp("Feb 30 10:00:00", 2024))

    def test_leap_day(self):
        self.assertEqual(parse_timestamp("Feb 29 10:00:00", 2024), datetime(2024, 2, 29, 10, 0))
        self.assertIsNone(parse_timestamp("Feb 29 10:00:00", 2023))


class TestParseLine(unittest.TestCase):
    """Verify parse_line converts raw lines to LogEvent or None."""

    def test_line_with_queue_id(self):
        line = "Jan 10 10:00:01 mx1 postfix/cleanup[101]: ABC123: message-id=<foo@bar>\n"
        event = parse_line(line, source="mail.log", line_no=7, year=2024)
        self.assertIsNotNone(event)
        self.assertEqual(event.timestamp, datetime(2024, 1, 10, 10, 0, 1))
        self.assertEqual(event.host, "mx1")
        self.assertEqual(event.tag, "postfix/cleanup")
        self.assertEqual(event.pid, "101")
        self.assertEqual(event.queue_id, "ABC123")
        self.assertEqual(event.payload, "message-id=<foo@bar>")
        self.assertEqual(event.source, "mail.log")
        self.assertEqual(event.line_no, 7)
        self.assertEqual(event.raw, line.rstrip("\n"))

    def test_line_without_queue_id(self):
        event = parse_line("Jan 10 10:00:00 mx1 postfix/smtpd[100]: connect from a.example[192.0.2.1]")
        self.assertIsNotNone(event)
        self.assertIsNone(event.queue_id)
        self.assertEqual(event.payload, "connect from a.example[192.0.2.1]")

    def test_noqueue_is_not_a_queue_id(self):
        event = parse_line("Jan 10 10:00:00 mx1 postfix/smtpd[100]: NOQUEUE: reject: RCPT from x")
        self.assertIsNone(event.queue_id)
        self.assertEqual(event.payload, "NOQUEUE: reject: RCPT from x")

    def test_lowercase_token_is_not_a_queue_id(self):
        event = parse_line("Jan 10 10:00:00 mx1 postfix/anvil[100]: statistics: max connection rate 1/60s")
        self.assertIsNone(event.queue_id)

    def test_tag_without_pid(self):
        event = parse_line("Jan 10 10:00:00 mx1 postfix: ABC123: removed")
        self.assertEqual(event.tag, "postfix")
        self.assertIsNone(event.pid)
        self.assertEqual(event.queue_id, "ABC123")

    def test_priority_prefix_tolerated(self):
        event = parse_line("<22>Jan 10 10:00:00 mx1 postfix/qmgr[1]: ABC123: removed")
        self.assertIsNotNone(event)
        self.assertEqual(event.queue_id, "ABC123")

    def test_rfc3339_line(self):
        event = parse_line("2024-01-15T10:00:01.123456+00:00 mx1 postfix/qmgr[1]: ABC123: removed")
        self.assertEqual(event.timestamp, _local(2024, 1, 15, 10, 0, 1, 123456))
        self.assertEqual(event.queue_id, "ABC123")

    def test_payload_preserved_verbatim(self):
        line = "Jan 10 10:00:01 mx1 postfix/smtp[1]: ABC123: to=<Bob@Example.org>,  relay=none, status=deferred (Host   not found)"
        event = parse_line(line)
        self.assertEqual(event.payload, "to=<Bob@Example.org>,  relay=none, status=deferred (Host   not found)")

    def test_returns_none_for_empty_line(self):
        self.assertIsNone(parse_line(""))

    def test_returns_none_for_garbage(self):
        self.assertIsNone(parse_line("not a log line at all"))

    def test_returns_none_for_bad_timestamp(self):
        self.assertIsNone(parse_line("Foo 99 99:99:99 mx1 postfix/qmgr[1]: ABC123: removed"))

    def test_event_is_frozen(self):
        event = parse_line("Jan 10 10:00:01 mx1 postfix/qmgr[1]: ABC123: removed")
        with self.assertRaises(AttributeError):
            event.queue_id = "OTHER1"


class TestYearTracker(unittest.TestCase):
    def test_keeps_year_within_file(self):
        tracker = YearTracker(2023)
        a = tracker.parse("Mar  1 10:00:00 mx1 postfix/qmgr[1]: ABC123: removed")
        b = tracker.parse("Apr  1 10:00:00 mx1 postfix/qmgr[1]: ABC123: removed")
        self.assertEqual(a.timestamp.year, 2023)
        self.assertEqual(b.timestamp.year, 2023)

    def test_rolls_over_at_new_year(self):
        tracker = YearTracker(2023)
        dec = tracker.parse("Dec 31 23:59:59 mx1 postfix/qmgr[1]: ABC123: removed")
        jan = tracker.parse("Jan  1 00:00:01 mx1 postfix/qmgr[1]: ABC123: removed")
        self.assertEqual(dec.timestamp, datetime(2023, 12, 31, 23, 59, 59))
        self.assertEqual(jan.timestamp, datetime(2024, 1, 1, 0, 0, 1))
        self.assertLess(dec.timestamp, jan.timestamp)

    def test_rfc3339_lines_ignore_tracker(self):
        tracker = YearTracker(2023)
        tracker.parse("Dec 31 23:59:59 mx1 postfix/qmgr[1]: ABC123: removed")
        event = tracker.parse("2020-01-01T00:00:00 mx1 postfix/qmgr[1]: ABC123: removed")
        self.assertEqual(event.timestamp.year, 2020)
        self.assertEqual(tracker.year, 2023)

    def test_unrecognized_line(self):
        self.assertIsNone(YearTracker(2023).parse("garbage"))

    def test_span_counts_rollovers(self):
        tracker = YearTracker(2000, follow_rollover=False)
        self.assertIsNone(tracker.span)
        for line in (
            "Nov 30 10:00:00 mx1 postfix/qmgr[1]: ABC123: removed",
            "Jan  2 10:00:00 mx1 postfix/qmgr[1]: ABC123: removed",
            "Feb 29 10:00:00 mx1 postfix/qmgr[1]: ABC123: removed",
        ):
            self.assertIsNotNone(tracker.parse(line))
        self.assertEqual(tracker.span, (1, 2))
        self.assertEqual(tracker.year, 2000)


class TestStartYears(unittest.TestCase):
    """One year policy across every source of a run."""

    def test_rotated_file_starts_a_year_earlier(self):
        # rotated file crosses Dec -> Jan, current file is all January
        self.assertEqual(start_years([(1, 1), (0, 1)], year=2024), [2023, 2024])

    def test_same_months_same_year(self):
        self.assertEqual(start_years([(0, 3), (0, 5)], year=2024), [2024, 2024])

    def test_december_file_beside_january_file(self):
        self.assertEqual(start_years([(0, 12), (0, 1)], year=2025), [2024, 2025])

    def test_default_year_never_in_the_future(self):
        today = datetime(2025, 1, 2)
        self.assertEqual(start_years([(0, 12), (0, 1)], today=today), [2024, 2025])

    def test_default_year_within_current_year(self):
        today = datetime(2025, 6, 1)
        self.assertEqual(start_years([(0, 3), (1, 2)], today=today), [2025, 2024])

    def test_source_without_syslog_lines(self):
        self.assertEqual(start_years([None, (0, 4)], year=2024), [2024, 2024])

    def test_leap_day_after_rollover(self):
        (start,) = start_years([(1, 2)], year=2024)
        tracker = YearTracker(start)
        tracker.parse("Dec 31 23:59:59 mx1 postfix/qmgr[1]: ABC123: removed")
        event = tracker.parse("Feb 29 10:00:00 mx1 postfix/qmgr[1]: ABC123: removed")
        self.assertEqual(event.timestamp, datetime(2024, 2, 29, 10, 0))


if __name__ == "__main__":
    unittest.main()
