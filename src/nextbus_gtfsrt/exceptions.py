"""Exceptions raised by nextbus_gtfsrt."""


class NextBusError(Exception):
    """Base class for errors raised by this package."""


class NextBusApiError(NextBusError):
    """The NextBus API answered with an <Error> body."""

    def __init__(self, message: str, should_retry: bool = False):
        super().__init__(message)
        self.should_retry = should_retry


class DownloadCancelled(NextBusError):
    """The downloader was closed while a request was waiting to be sent."""


class ConfigurationError(NextBusError):
    """Startup or matching configuration is invalid."""
