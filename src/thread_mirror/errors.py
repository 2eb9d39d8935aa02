"""Exceptions raised by the mirroring core."""

from __future__ import annotations


class ThreadMirrorError(Exception):
    """Base class for all errors raised by the service."""


class ConfigParseError(ThreadMirrorError):
    """A ``THREAD_MAPPING_*`` entry could not be parsed."""

    def __init__(self, entry: str, reason: str):
        self.entry = entry
        self.reason = reason
        super().__init__(f"{reason}: {entry!r}")


class InvalidEndpoint(ThreadMirrorError):
    """Impersonation URL does not look like a Discord webhook."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"not a Discord webhook URL: {url!r}")


class NotBound(ThreadMirrorError):
    def __init__(self, source_id: int):
        self.source_id = source_id
        super().__init__(f"conversation {source_id} has no mapping")


class AlreadyRunning(ThreadMirrorError):
    def __init__(self, source_id: int):
        self.source_id = source_id
        super().__init__(f"backfill for conversation {source_id} is already running")


class TransportError(ThreadMirrorError):
    """Network or API failure while talking to the chat platform.

    ``recoverable`` errors (rate limits, server errors, timeouts) allow the
    caller to try a cheaper representation; fatal ones mean the request
    itself is rejected and retrying in another shape will not help.
    """

    def __init__(
        self,
        message: str,
        *,
        recoverable: bool,
        status: int | None = None,
        retry_after: float | None = None,
    ):
        self.recoverable = recoverable
        self.status = status
        self.retry_after = retry_after
        super().__init__(message)


class BackfillError(ThreadMirrorError):
    """History replay aborted before completion."""

    def __init__(self, source_id: int, cause: BaseException):
        self.source_id = source_id
        self.cause = cause
        super().__init__(f"backfill for conversation {source_id} aborted: {cause}")
