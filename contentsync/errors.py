"""Exception types raised by contentsync.

Convention:
- ``ConfigurationError`` subclasses are raised before any destructive action
  and are never retried.
- ``RepositoryError`` subclasses come from the git boundary and go through the
  retry policy before surfacing.
- ``CacheIOError`` never leaves the cache store; callers only see a miss.
"""

from __future__ import annotations


class ContentSyncError(Exception):
    """Base class for every error raised by contentsync."""


class ConfigurationError(ContentSyncError):
    pass


class InvalidRepositoryUrl(ConfigurationError):
    def __init__(self, url: str) -> None:
        super().__init__(
            f"Invalid repository URL: {url!r}. "
            "Expected git@host:org/repo.git or https://host/org/repo.git"
        )
        self.url = url


class InvalidMappingConfig(ConfigurationError):
    pass


class UnknownMappingType(ConfigurationError):
    def __init__(self, kind: object) -> None:
        super().__init__(f"Unknown mapping type: {kind}")
        self.kind = kind


class RepositoryError(ContentSyncError):
    pass


class RepositoryUnreachable(RepositoryError):
    pass


class CloneFailed(RepositoryError):
    pass


class OperationFailed(ContentSyncError):
    """Raised once the retry policy gives up on an operation."""

    def __init__(self, context: str, last_error: BaseException, attempts: int) -> None:
        super().__init__(f"{context} failed after {attempts} attempts: {last_error}")
        self.context = context
        self.last_error = last_error
        self.attempts = attempts


class SafetyCheckFailed(ContentSyncError):
    pass


class InstallationIncomplete(ContentSyncError):
    def __init__(self, failed_keys: list[str]) -> None:
        super().__init__(
            f"{len(failed_keys)} mapping(s) failed to install: {', '.join(failed_keys)}"
        )
        self.failed_keys = failed_keys


class InstallItemFailed(ContentSyncError):
    def __init__(self, key: str, cause: BaseException) -> None:
        super().__init__(f"Install of {key!r} failed: {cause}")
        self.key = key
        self.cause = cause


class CacheIOError(ContentSyncError):
    pass
