"""
Custom Exception Classes for the Config Refresh Coordinator

Hierarchical exception structure for error handling across services.
"""


class RefreshError(Exception):
    """Base exception for all config refresh errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(RefreshError):
    """Configuration-related errors (bad settings, inconsistent snapshots)"""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(f"Config Error: {message}", recoverable)


class FetchError(RefreshError):
    """Remote source errors (network, auth, service failure)"""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        status_code: int | None = None,
    ):
        self.operation = operation
        self.status_code = status_code
        super().__init__(f"Fetch Error: {message}", recoverable=True)


class NotFoundError(RefreshError, KeyError):
    """Requested key is absent from the current snapshot"""

    def __init__(self, key: str, label: str | None = None):
        self.key = key
        self.label = label
        where = f" (label: {label!r})" if label is not None else ""
        super().__init__(f"Key not found: {key}{where}", recoverable=True)

    def __str__(self) -> str:
        return self.message


class StartupFetchError(RefreshError):
    """Initial snapshot population failed - serving is unsafe"""

    def __init__(self, message: str, cause: Exception | None = None):
        self.cause = cause
        super().__init__(f"Startup Error: {message}", recoverable=False)
