"""Error taxonomy shared by providers, the planner and the apply engine.

Every provider adapter classifies its SDK failures into one of the
:class:`ErrorKind` values so that callers can decide uniformly whether to
retry, stop, or surface a validation message.
"""
from __future__ import annotations

from enum import Enum

from .exit_codes import ExitCode


class ErrorKind(str, Enum):
    """Classification attached to every :class:`GenesysError`."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    UNAUTHORIZED = "unauthorized"
    THROTTLED = "throttled"
    TRANSIENT = "transient"
    CONFLICT = "conflict"
    FATAL = "fatal"


RETRIABLE_KINDS = frozenset({ErrorKind.THROTTLED, ErrorKind.TRANSIENT})
_VALIDATION_KINDS = frozenset({ErrorKind.VALIDATION, ErrorKind.CONFLICT})

CREDENTIALS_HINT = "Run `genesys configure setup` to refresh provider credentials."


class GenesysError(RuntimeError):
    """Base class for classified genesys failures."""

    default_kind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        underlying: BaseException | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.underlying = underlying
        if hint is None and self.kind is ErrorKind.UNAUTHORIZED:
            hint = CREDENTIALS_HINT
        self.hint = hint

    @property
    def retriable(self) -> bool:
        """Return True when the failure may succeed on a later attempt."""
        return self.kind in RETRIABLE_KINDS

    @property
    def exit_code(self) -> int:
        """Return the process exit code for this failure."""
        if self.kind in _VALIDATION_KINDS:
            return int(ExitCode.VALIDATION)
        return int(ExitCode.PROVIDER)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly view of the error."""
        payload: dict[str, object] = {
            "kind": self.kind.value,
            "message": self.message,
            "retriable": self.retriable,
        }
        if self.hint:
            payload["hint"] = self.hint
        if self.underlying is not None:
            payload["underlying"] = str(self.underlying)
        return payload


class ProviderError(GenesysError):
    """Raised by provider adapters; ``kind`` carries the classification."""


class ValidationError(GenesysError):
    """Raised for malformed input, including resource name rule violations."""

    default_kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        suggestion: str | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, kind=ErrorKind.VALIDATION, hint=hint)
        self.field = field
        self.suggestion = suggestion

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        if self.field:
            payload["field"] = self.field
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        return payload


class ConflictError(GenesysError):
    """Raised when a plan violates a dependency or uniqueness rule."""

    default_kind = ErrorKind.CONFLICT


class OperationCancelled(RuntimeError):
    """Raised when the surrounding run context has been cancelled."""

    exit_code = int(ExitCode.CANCELLED)


__all__ = [
    "CREDENTIALS_HINT",
    "ConflictError",
    "ErrorKind",
    "GenesysError",
    "OperationCancelled",
    "ProviderError",
    "RETRIABLE_KINDS",
    "ValidationError",
]
