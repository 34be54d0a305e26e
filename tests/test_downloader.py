"""Tests for the throttled DownloaderService."""

import threading
import unittest
from unittest.mock import MagicMock
import sys
from pathlib import Path

import requests

# Add src to path so we can import nextbus_gtfsrt
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from nextbus_gtfsrt.downloader import DownloaderService
from nextbus_gtfsrt.exceptions import DownloadCancelled


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


def make_response(size: int, declared: bool = True, status_error: Exception = None):
    response = MagicMock()
    response.content = b"x" * size
    response.headers = {"Content-Length": str(size)} if declared else {}
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    return response


def make_session(size: int, clock: FakeClock = None, request_duration: float = 0.0):
    session = MagicMock()

    def get(url, headers=None, timeout=None):
        if clock is not None:
            clock.now += request_duration
        return make_response(size)

    session.get.side_effect = get
    return session


class TestDownloaderService(unittest.TestCase):
    """Test pacing of requests against the byte budget."""

    def test_returns_body_and_sends_gzip_header(self):
        clock = FakeClock()
        session = make_session(10)
        downloader = DownloaderService(20, 1000, session=session, clock=clock, sleep=clock.sleep)

        stream = downloader.open_url("http://example.com/feed")

        self.assertEqual(stream.read(), b"x" * 10)
        _, kwargs = session.get.call_args
        self.assertEqual(kwargs["headers"], {"Accept-Encoding": "gzip"})

    def test_no_stall_under_budget(self):
        clock = FakeClock()
        downloader = DownloaderService(20, 1000, session=make_session(100), clock=clock, sleep=clock.sleep)

        for _ in range(5):
            downloader.open_url("http://example.com/feed")

        self.assertEqual(clock.sleeps, [])
        self.assertEqual(downloader.window_total, 500)

    def test_stall_delay_follows_projected_overrun(self):
        clock = FakeClock()
        downloader = DownloaderService(20, 100, session=make_session(100), clock=clock, sleep=lambda d: clock.sleeps.append(d))

        downloader.open_url("http://example.com/1")
        downloader.open_url("http://example.com/2")
        downloader.open_url("http://example.com/3")

        # 100 + 2*100 = 300 projected -> 100/200*20; then 200 + 2*100 = 400 -> 100/300*20
        self.assertEqual(len(clock.sleeps), 2)
        self.assertAlmostEqual(clock.sleeps[0], 10.0)
        self.assertAlmostEqual(clock.sleeps[1], 20.0 / 3)

    def test_stall_never_exceeds_window(self):
        clock = FakeClock()
        downloader = DownloaderService(20, 1000, session=make_session(400), clock=clock, sleep=lambda d: clock.sleeps.append(d))

        downloader.open_url("http://example.com/1")
        downloader.open_url("http://example.com/2")

        self.assertEqual(clock.sleeps, [20])

    def test_old_records_are_pruned(self):
        clock = FakeClock()
        downloader = DownloaderService(20, 100, session=make_session(100), clock=clock, sleep=clock.sleep)

        downloader.open_url("http://example.com/1")
        clock.now += 21
        downloader.open_url("http://example.com/2")

        self.assertEqual(clock.sleeps, [])
        self.assertEqual(downloader.window_total, 100)

    def test_sustained_load_stays_within_budget(self):
        """Rolling-window bytes stay bounded and throughput stays near budget/window."""
        budget, window, size = 1000, 20, 100
        clock = FakeClock(0.0)
        session = make_session(size, clock=clock, request_duration=0.5)
        downloader = DownloaderService(window, budget, session=session, clock=clock, sleep=clock.sleep)

        timestamps = []
        for i in range(200):
            downloader.open_url(f"http://example.com/{i}")
            timestamps.append(clock.now)

        for i, t in enumerate(timestamps):
            in_window = sum(size for ts in timestamps[: i + 1] if ts >= t - window)
            self.assertLessEqual(in_window, budget + size)

        rate = 200 * size / clock.now
        self.assertLessEqual(rate, budget / window)
        self.assertGreaterEqual(rate, budget / (3 * window))

    def test_uses_body_length_without_content_length(self):
        clock = FakeClock()
        session = MagicMock()
        session.get.return_value = make_response(42, declared=False)
        downloader = DownloaderService(20, 1000, session=session, clock=clock, sleep=clock.sleep)

        downloader.open_url("http://example.com/feed")

        self.assertEqual(downloader.window_total, 42)

    def test_http_error_propagates_after_recording(self):
        clock = FakeClock()
        session = MagicMock()
        session.get.return_value = make_response(50, status_error=requests.HTTPError("503"))
        downloader = DownloaderService(20, 1000, session=session, clock=clock, sleep=clock.sleep)

        with self.assertRaises(requests.HTTPError):
            downloader.open_url("http://example.com/feed")
        self.assertEqual(downloader.window_total, 50)

    def test_closed_downloader_refuses_requests(self):
        session = MagicMock()
        downloader = DownloaderService(20, 1000, session=session)

        downloader.close()

        with self.assertRaises(DownloadCancelled):
            downloader.open_url("http://example.com/feed")
        session.get.assert_not_called()
        session.close.assert_called_once()

    def test_close_interrupts_stall(self):
        clock = FakeClock()
        stalling = threading.Event()
        readings = []

        def stall_clock():
            # The third reading is the prune check of the stalled request
            if len(readings) == 2:
                stalling.set()
            readings.append(clock.now)
            return clock.now

        session = make_session(100)
        downloader = DownloaderService(20, 100, session=session, clock=stall_clock)
        downloader.open_url("http://example.com/1")

        errors = []

        def fetch():
            try:
                downloader.open_url("http://example.com/2")
            except DownloadCancelled as e:
                errors.append(e)

        worker = threading.Thread(target=fetch)
        worker.start()
        self.assertTrue(stalling.wait(5))

        downloader.close()
        worker.join(2)

        self.assertFalse(worker.is_alive())
        self.assertEqual(len(errors), 1)
        self.assertIn("throttling", str(errors[0]))
        self.assertEqual(session.get.call_count, 1)


if __name__ == "__main__":
    unittest.main()
