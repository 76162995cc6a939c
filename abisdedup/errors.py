"""
Error taxonomy for the dedup core.

A single exception type carries a closed error kind plus the identifiers
needed to diagnose it. Callers branch on ``err.kind`` instead of on
exception subclasses.
"""

from enum import Enum
from typing import Any, Dict


class ErrorKind(str, Enum):
    UNKNOWN_REQUEST_ID = "UNKNOWN_REQUEST_ID"
    DUPLICATE_RESPONSE = "DUPLICATE_RESPONSE"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    DISPATCH_FAILURE = "DISPATCH_FAILURE"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    NO_BIOMETRIC_CAPTURED = "NO_BIOMETRIC_CAPTURED"
    NOT_ASSIGNED_TO_VERIFIER = "NOT_ASSIGNED_TO_VERIFIER"
    RECORD_NOT_FOUND = "RECORD_NOT_FOUND"


# Transient kinds are retried by the bounded retry policy; everything else
# is a protocol or programming error and surfaces immediately.
RETRYABLE_KINDS = frozenset({ErrorKind.DISPATCH_FAILURE, ErrorKind.STORAGE_UNAVAILABLE})


class DedupError(Exception):
    """Raised by every component of the dedup core."""

    def __init__(self, kind: ErrorKind, message: str, **context: Any):
        self.kind = kind
        self.message = message
        self.context: Dict[str, Any] = context
        super().__init__(self._render())

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def _render(self) -> str:
        if not self.context:
            return f"[{self.kind.value}] {self.message}"
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"[{self.kind.value}] {self.message} ({details})"

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used for log context and CLI output."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": {k: str(v) for k, v in self.context.items()},
        }
