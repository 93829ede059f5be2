"""
Exceptions raised by the image sync.

Anything deriving from EntryError is caught per (record, field) entry by the
executor. Everything else stops the run.
"""

from typing import Optional


class KoboSyncError(Exception):
    """Base class for all sync errors."""


class ConfigError(KoboSyncError):
    pass


class MalformedResponseError(KoboSyncError):
    pass


class AmbiguousFieldValueError(KoboSyncError):
    pass


class StepError(KoboSyncError):
    pass


class KoboApiError(KoboSyncError):
    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


class AssetNotFoundError(KoboApiError):
    pass


class RetriesExhaustedError(KoboSyncError):
    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException] = None):
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"{operation} failed after {attempts} attempts{detail}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


# -----------------------------
# Per-entry errors
# -----------------------------

class EntryError(KoboSyncError):
    pass


class DuplicateImageNameError(EntryError):
    pass


class HashMismatchError(EntryError):
    pass


class DownloadError(EntryError):
    pass


class NotARegularFileError(EntryError):
    pass


class ImageInfoError(EntryError):
    pass


class InvalidStateError(KoboSyncError):
    """A persisted attachment state record could not be parsed; treated as absent."""
