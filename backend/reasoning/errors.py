"""
Error types for the reasoning engine.

All errors are structured and contain enough context (task name, phase)
to diagnose a failed reasoning run from logs alone.

Taxonomy:
- ValidationFailure: output did not satisfy structure or business rules.
  Never escapes the engine; folded into ReasoningResult.validation_issues.
- GenerationFailure: the generation callback raised or never returned.
- SchemaMisuse: caller supplied an inconsistent ValidationSchema.
- AuthorizationDenied: injected authorizer refused the task.
"""
from enum import Enum
from typing import Any, Optional


class ReasoningError(Exception):
    """
    Base error for reasoning failures.

    All errors in this hierarchy contain structured data for logging and debugging.
    """

    def __init__(
        self,
        message: str,
        task_name: Optional[str] = None,
        phase: Optional[str] = None,
    ):
        self.message = message
        self.task_name = task_name
        self.phase = phase
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "task_name": self.task_name,
            "phase": self.phase,
        }


class ValidationFailure(ReasoningError):
    """
    Generation output failed structural, type or business-rule checks.

    Caller validators may raise this instead of returning a verdict; the
    executor converts it into validation issues on the result.
    """

    def __init__(
        self,
        issues: list[str],
        message: Optional[str] = None,
        task_name: Optional[str] = None,
    ):
        self.issues = list(issues) or ["Output rejected by validator"]
        super().__init__(
            message or "; ".join(self.issues),
            task_name=task_name,
            phase="validating",
        )

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["issues"] = self.issues
        return d


class GenerationFailure(ReasoningError):
    """
    The generation capability raised, was cancelled, or returned garbage.

    Fatal for the path it happened on. When both dual paths fail, the raised
    error carries both path failures in `failures`.
    """

    def __init__(
        self,
        message: str,
        task_name: Optional[str] = None,
        phase: Optional[str] = None,
        cause_type: Optional[str] = None,
        failures: Optional[list["GenerationFailure"]] = None,
    ):
        super().__init__(message, task_name, phase)
        self.cause_type = cause_type
        self.failures = failures or []

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["cause_type"] = self.cause_type
        if self.failures:
            d["failures"] = [f.to_dict() for f in self.failures]
        return d


class SchemaMisuse(ReasoningError):
    """
    ValidationSchema is internally inconsistent.

    Raised BEFORE any generation call so no metered request is wasted on
    output that could never be validated.
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        type_tag: Optional[Any] = None,
        task_name: Optional[str] = None,
    ):
        super().__init__(message, task_name=task_name, phase="new")
        self.field_name = field_name
        self.type_tag = type_tag

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["field_name"] = self.field_name
        d["type_tag"] = str(self.type_tag) if self.type_tag is not None else None
        return d


class AuthorizationDenied(ReasoningError):
    """Injected authorizer refused the task before generation."""
    pass


# ═══════════════════════════════════════════════════════════════════════════════
# CALLER-FACING CLASSIFICATION
# ═══════════════════════════════════════════════════════════════════════════════

class ErrorCode(Enum):
    """Stable error codes for the HTTP-facing layer: (code, status, retryable)."""
    UNAUTHORIZED = ("UNAUTHORIZED", 401, False)
    FORBIDDEN = ("FORBIDDEN", 403, False)
    NOT_FOUND = ("NOT_FOUND", 404, False)
    VALIDATION = ("VALIDATION_ERROR", 400, False)
    RATE_LIMITED = ("RATE_LIMITED", 429, True)
    EXTERNAL_SERVICE = ("EXTERNAL_SERVICE_ERROR", 502, True)
    INTERNAL = ("INTERNAL_ERROR", 500, False)
    TIMEOUT = ("TIMEOUT", 504, True)

    @property
    def code(self) -> str:
        return self.value[0]

    @property
    def status(self) -> int:
        return self.value[1]

    @property
    def retryable(self) -> bool:
        return self.value[2]


def _classify_message(message: str) -> Optional[ErrorCode]:
    message = message.lower()
    if "timeout" in message or "timed out" in message:
        return ErrorCode.TIMEOUT
    if "rate limit" in message:
        return ErrorCode.RATE_LIMITED
    if "unauthorized" in message:
        return ErrorCode.UNAUTHORIZED
    if "not found" in message:
        return ErrorCode.NOT_FOUND
    return None


def classify_error(error: BaseException) -> ErrorCode:
    """
    Map an exception to a caller-facing ErrorCode.

    Taxonomy errors map by type; anything else falls back to message
    heuristics and finally INTERNAL.
    """
    if isinstance(error, (SchemaMisuse, ValidationFailure)):
        return ErrorCode.VALIDATION
    if isinstance(error, AuthorizationDenied):
        return ErrorCode.FORBIDDEN
    if isinstance(error, TimeoutError):
        return ErrorCode.TIMEOUT
    if isinstance(error, GenerationFailure):
        hint = f"{error.cause_type or ''} {error.message}"
        if error.cause_type == "TimeoutError":
            return ErrorCode.TIMEOUT
        return _classify_message(hint) or ErrorCode.EXTERNAL_SERVICE
    return _classify_message(str(error)) or ErrorCode.INTERNAL


def error_payload(
    error: BaseException,
    correlation_id: str,
    message: Optional[str] = None,
) -> dict:
    """
    Build the generic failure body for the HTTP-facing layer.

    Internal details stay in the logs; only the code, a generic message and
    the correlation id reach the caller.
    """
    code = classify_error(error)
    return {
        "success": False,
        "error": {
            "code": code.code,
            "message": message or "Reasoning request failed",
            "retryable": code.retryable,
            "correlation_id": correlation_id,
        },
        "status": code.status,
    }
