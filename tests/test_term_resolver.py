import os
import sys
import unittest
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from enrollbot.term_resolver import TermResolver, term_for


class TestTermResolver(unittest.TestCase):
    def test_override_wins(self):
        resolver = TermResolver(override="2030-1", clock=lambda: datetime(2025, 9, 1))
        self.assertEqual(resolver.current_term(), "2030-1")

    def test_first_half_of_year(self):
        self.assertEqual(term_for(datetime(2025, 1, 15)), "2025-1")
        self.assertEqual(term_for(datetime(2025, 6, 30)), "2025-1")

    def test_second_half_of_year(self):
        self.assertEqual(term_for(datetime(2025, 7, 1)), "2025-2")
        self.assertEqual(term_for(datetime(2025, 12, 31)), "2025-2")

    def test_clock_is_read_in_configured_timezone(self):
        # 02:00 UTC on July 1st is still June 30th in Bogota (UTC-5)
        utc_moment = datetime(2025, 7, 1, 2, 0, tzinfo=timezone.utc)
        resolver = TermResolver(override="", tz_name="America/Bogota", clock=lambda: utc_moment)
        self.assertEqual(resolver.current_term(), "2025-1")
        self.assertEqual(term_for(utc_moment, ZoneInfo("UTC")), "2025-2")


if __name__ == "__main__":
    unittest.main()
