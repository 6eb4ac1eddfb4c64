"""Exception hierarchy for the intake engine."""

from __future__ import annotations

from typing import Any, Dict, Optional


class IntakeError(RuntimeError):
    """Base class for recoverable intake failures."""


class InvalidIdentity(IntakeError):
    """Raised when a channel address cannot be reduced to a canonical identity."""

    def __init__(self, raw: Any, reason: str = "not a plausible international number") -> None:
        super().__init__(f"Invalid identity {raw!r}: {reason}")
        self.raw = raw
        self.reason = reason


class TransportError(IntakeError):
    """Custom error that carries HTTP metadata and response body."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.payload = payload


class StoreError(IntakeError):
    """Backing medium failure that could not be recovered locally."""
