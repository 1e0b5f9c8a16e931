"""Custom exceptions for aiobscura."""

from typing import Optional


class AiobscuraError(Exception):
    """Base exception for all aiobscura errors."""

    pass


class StoreError(AiobscuraError):
    """Raised when a persistence operation fails (I/O, constraint, migration)."""

    pass


class IoError(AiobscuraError):
    """Raised for filesystem I/O failures outside the store."""

    pass


class ParseError(AiobscuraError):
    """
    Fatal parser error.

    Per-line and per-record problems are warnings collected in the parse
    result, not exceptions. This is raised only when a file cannot be read
    at all.
    """

    def __init__(self, assistant: str, message: str):
        self.assistant = assistant
        self.message = message
        super().__init__(f"{assistant}: {message}")


class SerializationError(AiobscuraError):
    """Raised when JSON encoding/decoding fails where it cannot be tolerated."""

    pass


class ConfigError(AiobscuraError):
    """Raised for missing or invalid configuration."""

    pass


class SessionNotFoundError(AiobscuraError):
    """Raised when a session lookup misses."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class PlanNotFoundError(AiobscuraError):
    """Raised when a plan lookup misses."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Plan not found: {plan_id}")


class CollectorError(AiobscuraError):
    """Raised for any failure of the remote collector client."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Transport failures and 5xx responses are worth retrying."""
        return self.status_code is None or self.status_code >= 500


class LockBusyError(AiobscuraError):
    """Raised when a process lock is already held by another process."""

    def __init__(self, lock_name: str, message: Optional[str] = None):
        self.lock_name = lock_name
        super().__init__(message or f"lock is already held: {lock_name}")
