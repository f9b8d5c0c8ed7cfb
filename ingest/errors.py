from __future__ import annotations


class SyncError(Exception):
    pass


class DecryptionError(SyncError):
    pass


class ParseError(SyncError, ValueError):
    pass


class RecordValidationError(SyncError, ValueError):
    pass


class FetchError(SyncError):
    def __init__(self, reason: str, *, status_code: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class PersistenceError(SyncError):
    pass


class PublishError(SyncError):
    pass
