import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from fxlifecycle.utils.timeutils import (
    SESSION_BOUNDARIES_UTC,
    is_in_session,
    is_within_pre_rollover_window,
    is_within_session_transition_buffer,
    minutes_until_next_rollover,
    parse_time_str,
    to_epoch_ms,
    to_iso,
    trading_day_key,
)

import unittest


class TestTimestamps(unittest.TestCase):
    def test_iso_and_epoch_agree(self) -> None:
        self.assertEqual(to_epoch_ms("2024-01-10T09:00:00Z"), 1704877200000)
        self.assertEqual(to_epoch_ms("2024-01-10T09:00:00"), 1704877200000, "Naive strings are UTC")
        self.assertEqual(to_epoch_ms(1704877200000), 1704877200000)
        self.assertEqual(to_epoch_ms("1704877200000"), 1704877200000)
        self.assertEqual(to_iso(1704877200000), "2024-01-10T09:00:00+00:00")

    def test_invalid_timestamps(self) -> None:
        for value in (0, -5, None, "not-a-time"):
            with self.assertRaises(ValueError, msg=f"{value!r} should be rejected"):
                to_epoch_ms(value)


class TestTradingDay(unittest.TestCase):
    def test_day_key_respects_rollover_hour(self) -> None:
        self.assertEqual(trading_day_key(to_epoch_ms("2024-01-10T23:00:00Z")), "2024-01-10")
        self.assertEqual(trading_day_key(to_epoch_ms("2024-01-11T00:00:00Z")), "2024-01-11")
        self.assertEqual(trading_day_key(to_epoch_ms("2024-01-10T21:00:00Z"), 22), "2024-01-09")
        self.assertEqual(trading_day_key(to_epoch_ms("2024-01-10T23:00:00Z"), 22), "2024-01-10")

    def test_minutes_until_rollover(self) -> None:
        self.assertAlmostEqual(minutes_until_next_rollover(to_epoch_ms("2024-01-10T23:45:00Z")), 15.0)
        self.assertAlmostEqual(minutes_until_next_rollover(to_epoch_ms("2024-01-11T00:00:00Z")), 1440.0)
        self.assertAlmostEqual(minutes_until_next_rollover(to_epoch_ms("2024-01-10T22:00:00Z"), 22), 1440.0)
        self.assertAlmostEqual(minutes_until_next_rollover(to_epoch_ms("2024-01-10T21:30:00Z"), 22), 30.0)

    def test_pre_rollover_window(self) -> None:
        ts = to_epoch_ms("2024-01-10T23:45:00Z")
        self.assertTrue(is_within_pre_rollover_window(ts, 30))
        self.assertFalse(is_within_pre_rollover_window(ts, 10))
        self.assertFalse(is_within_pre_rollover_window(ts, 0), "A zero window disables the check")
        on_rollover = to_epoch_ms("2024-01-11T00:00:00Z")
        self.assertFalse(is_within_pre_rollover_window(on_rollover, 30), "The rollover instant starts the new day")


class TestSessions(unittest.TestCase):
    def test_boundaries_in_clock_order(self) -> None:
        self.assertEqual(list(SESSION_BOUNDARIES_UTC), sorted(SESSION_BOUNDARIES_UTC))
        self.assertEqual([b.strftime("%H:%M") for b in SESSION_BOUNDARIES_UTC],
                         ["00:00", "07:00", "12:00", "16:00", "21:00"])

    def test_transition_buffer_wraps_midnight(self) -> None:
        self.assertTrue(is_within_session_transition_buffer(to_epoch_ms("2024-01-10T23:50:00Z"), 20))
        self.assertTrue(is_within_session_transition_buffer(to_epoch_ms("2024-01-10T07:15:00Z"), 20))
        self.assertFalse(is_within_session_transition_buffer(to_epoch_ms("2024-01-10T09:00:00Z"), 20))
        self.assertFalse(is_within_session_transition_buffer(to_epoch_ms("2024-01-10T07:00:00Z"), 0))

    def test_session_filter(self) -> None:
        start, end = parse_time_str("07:00"), parse_time_str("20:00")
        self.assertTrue(is_in_session(to_epoch_ms("2024-01-10T07:00:00Z"), start, end))
        self.assertFalse(is_in_session(to_epoch_ms("2024-01-10T20:00:00Z"), start, end))
        self.assertFalse(is_in_session(to_epoch_ms("2024-01-10T22:00:00Z"), start, end))


if __name__ == '__main__':
    unittest.main()
