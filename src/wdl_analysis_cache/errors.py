"""Exception hierarchy for the WDL analysis cache."""


class CacheError(Exception):
    """Base class for all cache errors."""


class CacheStoreError(CacheError):
    """Raised when a persistent store file cannot be read or written."""


class BackupError(CacheError):
    """Raised when creating or restoring a backup fails."""


class MigrationError(CacheError):
    """Raised when a migration request is rejected or a step cannot be applied."""

    def __init__(self, message: str, issues: list[str] | None = None):
        super().__init__(message)
        self.issues = issues or []
