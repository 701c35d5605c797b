"""
Typed failures raised by the Jira sync engine.

Every abort path carries one of these so callers can tell a client-input
failure (bad credentials, malformed payload) from a server-side one
(transport, persistence) without matching on message text.
"""
from __future__ import annotations

from typing import Optional


class JiraSyncError(RuntimeError):
    """Base class for all sync failures."""

    retryable: bool = False
    client_error: bool = False

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage

    def with_stage(self, stage: str) -> "JiraSyncError":
        """Attach the stage name if nothing more specific was recorded yet."""
        if self.stage is None:
            self.stage = stage
        return self


class ValidationError(JiraSyncError):
    """Bad or missing credentials / required input. Never reaches the network."""

    client_error = True

    def __init__(self, message: str, *, missing: Optional[list[str]] = None, stage: Optional[str] = None) -> None:
        super().__init__(message, stage=stage)
        self.missing = missing or []


class TransportError(JiraSyncError):
    """HTTP non-2xx, timeout or connection failure."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.status_code = status_code
        # 4xx other than 429 will not get better by asking again
        if status_code is not None and 400 <= status_code < 500 and status_code != 429:
            self.retryable = False


class DecodeFailure(JiraSyncError):
    """A 200 response whose body is not the JSON document we expect."""

    client_error = True


class ConflictError(JiraSyncError):
    """Lost a uniqueness race on insert; recoverable by re-fetch and merge."""

    retryable = True

    def __init__(self, message: str, *, natural_key: Optional[str] = None, stage: Optional[str] = None) -> None:
        super().__init__(message, stage=stage)
        self.natural_key = natural_key


class PersistenceError(JiraSyncError):
    """Store-layer failure; fatal to the current stage."""


class SyncCancelledError(JiraSyncError):
    """Raised when the caller-supplied cancellation signal is set."""
