# nurture/errors.py
"""
Error taxonomy for the nurture engine.

ValidationError  → bad input (timestamp, phone, stage); logged and skipped, never retried.
TransportError   → SMS provider send failed; the lead stays due and is retried next sweep.
StoreError       → datastore read/write failed; state is unchanged, the caller decides retry.
"""

from __future__ import annotations
from typing import Any, Optional


class NurtureError(Exception):
    """Base class for all nurture engine errors."""


class ValidationError(NurtureError, ValueError):
    """Input that can never succeed on retry."""


class TransportError(NurtureError):
    """Outbound SMS send failed; carries HTTP metadata and response body."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:  # pragma: no cover - string formatting helper
        base = super().__str__()
        if self.body in (None, "", b""):
            return base
        body_repr = str(self.body).strip()
        if not body_repr or body_repr in base:
            return base
        return f"{base} | body={body_repr}"


class StoreError(NurtureError):
    """Datastore operation failed."""

    def __init__(self, message: str, *, action: Optional[str] = None, table: Optional[str] = None) -> None:
        super().__init__(message)
        self.action = action
        self.table = table


__all__ = ["NurtureError", "ValidationError", "TransportError", "StoreError"]
