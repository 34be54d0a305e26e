"""Bandwidth-aware downloader shared by every NextBus API request."""

import io
import logging
import threading
import time
from collections import deque
from typing import BinaryIO, Callable, Deque, NamedTuple, Optional

import requests

from .config import DEFAULT_REQUEST_TIMEOUT, DEFAULT_THROTTLE_SIZE, DEFAULT_THROTTLE_WINDOW
from .exceptions import DownloadCancelled

logger = logging.getLogger(__name__)


class DownloadRecord(NamedTuple):
    timestamp: float
    content_length: int


class DownloaderService:
    """
    All calls to the NextBus API go through this class.

    It keeps a running tab on recent download sizes and stalls callers so the
    bytes fetched per throttle window stay near the API bandwidth limit.
    Requests are serialized: only one is in flight at any time.
    """

    def __init__(
        self,
        throttle_window: float = DEFAULT_THROTTLE_WINDOW,
        throttle_size: int = DEFAULT_THROTTLE_SIZE,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize the downloader.

        Args:
            throttle_window: Length of the sliding window, in seconds.
            throttle_size: Byte budget per window.
            timeout: Per-request timeout, in seconds.
            session: Optional requests session (a new one is created otherwise).
            clock: Time source, in seconds.
            sleep: Optional sleep function; by default waits are interruptible by close().
        """
        self._throttle_window = throttle_window
        self._throttle_size = throttle_size
        self._timeout = timeout
        self._session = session or requests.Session()
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._downloaded: Deque[DownloadRecord] = deque()
        self._total_content_length = 0

    def open_url(self, url: str) -> BinaryIO:
        """
        Download a URL, pacing against the bandwidth budget.

        Args:
            url: Fully-qualified request URL.

        Returns:
            The (decompressed) response body as a binary stream.

        Raises:
            DownloadCancelled: If close() was called before the request went out.
            requests.RequestException: On any transport or HTTP error.
        """
        with self._lock:
            if self._closed.is_set():
                raise DownloadCancelled(f"downloader closed, not fetching {url}")

            self._stall_if_needed()

            logger.debug(f"Fetching {url}")
            response = self._session.get(
                url, headers={"Accept-Encoding": "gzip"}, timeout=self._timeout
            )
            content = response.content
            self._note_download(self._get_content_length(response, content))
            response.raise_for_status()

        return io.BytesIO(content)

    def close(self) -> None:
        """Wake any stalled caller and release the HTTP session."""
        self._closed.set()
        self._session.close()

    @property
    def window_total(self) -> int:
        """Bytes recorded in the current window (before pruning)."""
        return self._total_content_length

    def _note_download(self, content_length: int) -> None:
        self._downloaded.append(DownloadRecord(self._clock(), content_length))
        self._total_content_length += content_length

    def _stall_if_needed(self) -> None:
        """Prune the window and, when the projected size is over budget, wait."""
        prune_if_older_than = self._clock() - self._throttle_window
        while self._downloaded and self._downloaded[0].timestamp < prune_if_older_than:
            record = self._downloaded.popleft()
            self._total_content_length -= record.content_length

        if not self._downloaded:
            return

        # Assume the next download is average-sized, and double it for margin
        average = self._total_content_length // len(self._downloaded)
        estimated_size = self._total_content_length + 2 * average
        if estimated_size <= self._throttle_size:
            return

        to_download = estimated_size - self._throttle_size
        delay = (self._throttle_size / to_download) * self._throttle_window
        # Capped at one window, by which time every record has expired
        delay = min(delay, self._throttle_window)
        logger.info(f"throttling: delay={delay:.2f}s")
        self._wait(delay)

    def _wait(self, delay: float) -> None:
        if self._sleep is not None:
            self._sleep(delay)
            cancelled = self._closed.is_set()
        else:
            cancelled = self._closed.wait(delay)
        if cancelled:
            raise DownloadCancelled("downloader closed while throttling")

    @staticmethod
    def _get_content_length(response: requests.Response, content: bytes) -> int:
        """Prefer the declared transfer size; fall back to the body length."""
        header = response.headers.get("Content-Length")
        if header is not None:
            try:
                return int(header)
            except ValueError:
                pass
        return len(content)
