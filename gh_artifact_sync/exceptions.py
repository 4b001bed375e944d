"""Exceptions related to gh-artifact-sync."""

__all__ = [
    "SyncException",
    "ConfigException",
    "AuthenticationError",
    "MalformedPayload",
    "ApiError",
    "TransientError",
    "RunNotFoundError",
    "PermanentError",
    "ArtifactNotFoundError",
    "CorruptArtifact",
    "PublishError",
    "SupersededError",
]


class SyncException(Exception):
    """Generic base exception used for this library."""


class ConfigException(SyncException):
    """Raised when the environment does not describe a valid configuration."""


class AuthenticationError(SyncException):
    """Raised when a webhook delivery has a missing or invalid signature."""

    def __init__(self, message: str, missing: bool = False) -> None:
        super().__init__(message)
        self.missing = missing


class MalformedPayload(SyncException):
    """Raised when a webhook delivery cannot be parsed."""


class ApiError(SyncException):
    """Raised when a call to the CI provider API fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientError(ApiError):
    """Raised for failures that may succeed when retried (network, 5xx)."""


class RunNotFoundError(TransientError):
    """Raised when no successful run exists for a commit yet."""


class PermanentError(ApiError):
    """Raised for failures that will not succeed when retried (4xx, auth)."""


class ArtifactNotFoundError(PermanentError):
    """Raised when a run did not produce the requested artifact."""


class CorruptArtifact(SyncException):
    """Raised when a downloaded archive is truncated, unreadable or unsafe."""


class PublishError(SyncException):
    """Raised when the filesystem fails while publishing an output.

    When `cutover` is set the failure happened during the final rename or
    symlink swap and the published state may need manual inspection.
    """

    def __init__(self, message: str, cutover: bool = False) -> None:
        super().__init__(message)
        self.cutover = cutover


class SupersededError(SyncException):
    """Raised when a newer commit was published before this one could be."""
