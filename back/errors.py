"""
Exceptions shared by the cache layer, the upstream sources and the API.

Every error carries a human-readable message and a machine code so route
handlers can turn it into a JSON body without guessing.
"""


class WatchHubError(Exception):
    """Base exception for WatchHub."""

    code = "WATCHHUB_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(WatchHubError):
    """The caller sent a malformed or incomplete request. Not retryable."""

    code = "VALIDATION_ERROR"


class StorageError(WatchHubError):
    """The SQLite store could not complete a read or write."""

    code = "STORAGE_ERROR"


class SerializationError(WatchHubError):
    """A value handed to a cache write cannot be stored as JSON."""

    code = "SERIALIZATION_ERROR"


class NotFoundError(WatchHubError):
    code = "NOT_FOUND"


class SourceError(WatchHubError):
    """An upstream catalog / metadata / ratings call failed."""

    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, source: str, status_code: int | None = None):
        self.source = source
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {**super().to_dict(), "source": self.source}
