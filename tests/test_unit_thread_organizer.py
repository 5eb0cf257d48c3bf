#!/usr/bin/env python3
"""
Unit tests for ThreadOrganizer and Date header parsing
"""

import datetime
import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from email_exporter import ThreadOrganizer, parse_message_date
from mime_decoder import DecodedEmail


def make_email(message_id: str, thread_id: str, date: str) -> DecodedEmail:
    return DecodedEmail(
        id=message_id,
        thread_id=thread_id,
        date=date,
        from_address="alice@example.com",
        to="bob@example.com",
        subject="Re: schedule",
        body="Body",
    )


class TestParseMessageDate(unittest.TestCase):
    """Test cases for parse_message_date"""

    def test_rfc2822(self):
        parsed = parse_message_date("Mon, 15 Jan 2024 10:30:00 +0200")
        self.assertEqual(parsed, datetime.datetime(2024, 1, 15, 8, 30, tzinfo=datetime.timezone.utc))

    def test_iso_fallback(self):
        parsed = parse_message_date("2024-01-15T10:30:00Z")
        self.assertEqual(parsed, datetime.datetime(2024, 1, 15, 10, 30, tzinfo=datetime.timezone.utc))

    def test_naive_value_taken_as_utc(self):
        parsed = parse_message_date("2024-01-15 10:30:00")
        self.assertEqual(parsed.tzinfo, datetime.timezone.utc)

    def test_unparsable(self):
        for value in (None, "", "   ", "not a date", "Someday soon"):
            self.assertIsNone(parse_message_date(value), repr(value))


class TestThreadOrganizer(unittest.TestCase):
    """Test cases for ThreadOrganizer"""

    def setUp(self):
        self.organizer = ThreadOrganizer()

    def test_groups_by_thread_in_first_seen_order(self):
        records = [
            make_email("m1", "t-b", "Mon, 15 Jan 2024 10:00:00 +0000"),
            make_email("m2", "t-a", "Mon, 15 Jan 2024 09:00:00 +0000"),
            make_email("m3", "t-b", "Mon, 15 Jan 2024 11:00:00 +0000"),
        ]
        threads = self.organizer.organize(records)
        self.assertEqual(list(threads), ["t-b", "t-a"])
        self.assertEqual([r.id for r in threads["t-b"]], ["m1", "m3"])
        self.assertEqual(sum(len(messages) for messages in threads.values()), len(records))

    def test_sorted_oldest_first_across_timezones(self):
        records = [
            make_email("late", "t-1", "Mon, 15 Jan 2024 12:00:00 +0000"),
            make_email("early", "t-1", "Mon, 15 Jan 2024 12:30:00 +0200"),  # 10:30 UTC
            make_email("middle", "t-1", "Mon, 15 Jan 2024 06:45:00 -0500"),  # 11:45 UTC
        ]
        threads = self.organizer.organize(records)
        self.assertEqual([r.id for r in threads["t-1"]], ["early", "middle", "late"])

    def test_equal_dates_keep_input_order(self):
        date = "Mon, 15 Jan 2024 10:00:00 +0000"
        records = [make_email(f"m{i}", "t-1", date) for i in range(5)]
        threads = self.organizer.organize(records)
        self.assertEqual([r.id for r in threads["t-1"]], ["m0", "m1", "m2", "m3", "m4"])

    def test_unparsable_dates_sort_last_in_input_order(self):
        records = [
            make_email("bad-1", "t-1", "garbage"),
            make_email("newer", "t-1", "Tue, 16 Jan 2024 10:00:00 +0000"),
            make_email("bad-2", "t-1", ""),
            make_email("older", "t-1", "Mon, 15 Jan 2024 10:00:00 +0000"),
        ]
        threads = self.organizer.organize(records)
        self.assertEqual([r.id for r in threads["t-1"]], ["older", "newer", "bad-1", "bad-2"])

    def test_empty_input(self):
        self.assertEqual(self.organizer.organize([]), {})


if __name__ == '__main__':
    unittest.main()
