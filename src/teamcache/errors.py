"""Error taxonomy for team cache coordination.

Philosophy:
- One exception class per failure kind, so callers can catch precisely
- NotFound/Expired are lookup outcomes, not exceptions (see models.CacheStatus)
- Store errors propagate unchanged; the coordinator decides what to surface

Public API:
    TeamCacheError: Base class for all team cache errors
    StoreError: Base class for object store failures
    NetworkError, AccessDenied, BucketNotFound: Transport/permission failures
    SerializationError, CorruptedData: Payload failures
    LockNotAcquired: Another client holds the refresh lease
    ConfigError, FetcherResolutionError: Configuration failures
    sanitize_error_message: Mask credential-looking fragments for logs
"""

import re


class TeamCacheError(Exception):
    """Base class for team cache errors."""

    pass


class StoreError(TeamCacheError):
    """Raised when an object store operation fails."""

    pass


class NetworkError(StoreError):
    """Raised on connection failures, timeouts, and unexpected service errors."""

    pass


class AccessDenied(StoreError):
    """Raised when credentials lack permission for the container."""

    pass


class BucketNotFound(StoreError):
    """Raised when the configured bucket/container does not exist."""

    pass


class SerializationError(StoreError):
    """Raised when a payload cannot be encoded or decoded."""

    pass


class CorruptedData(StoreError):
    """Raised when a payload decodes but does not match the expected schema."""

    pass


class LockNotAcquired(TeamCacheError):
    """Raised when another client currently holds the refresh lease."""

    def __init__(self, team_id: str, holder: str | None = None):
        self.team_id = team_id
        self.holder = holder
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"Refresh lock for team '{team_id}' not acquired{detail}")


class ConfigError(TeamCacheError):
    """Raised when configuration operations fail."""

    pass


class FetcherResolutionError(ConfigError):
    """Raised when the configured cost fetcher cannot be imported."""

    pass


_SENSITIVE_PATTERN = re.compile(
    r"(?i)(accountkey|sharedaccesssignature|sig|secret|password|token|key)=([^;&\s]+)"
)


def sanitize_error_message(error: BaseException | str, limit: int = 200) -> str:
    """Create an error message safe for logs and per-team display.

    Truncates long messages and masks values following credential-like
    parameter names (``AccountKey=``, ``sig=``, ``token=`` ...).

    Args:
        error: Exception or message to sanitize
        limit: Maximum message length

    Returns:
        Sanitized message
    """
    if isinstance(error, BaseException):
        message = str(error) or type(error).__name__
    else:
        message = error
    message = _SENSITIVE_PATTERN.sub(lambda m: f"{m.group(1)}=***", message)
    if len(message) > limit:
        message = message[:limit] + "..."
    return message


__all__ = [
    "AccessDenied",
    "BucketNotFound",
    "ConfigError",
    "CorruptedData",
    "FetcherResolutionError",
    "LockNotAcquired",
    "NetworkError",
    "SerializationError",
    "StoreError",
    "TeamCacheError",
    "sanitize_error_message",
]
