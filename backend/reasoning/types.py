"""
Type definitions for the reasoning engine.

Tasks, steps, results, validation schemas and metric events. Inputs are
frozen; results are built once per invocation and never mutated after
they are returned.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Union

from reasoning.confidence import clamp_confidence
from reasoning.stages import ReasoningStage, parse_stage


# Opaque structured value returned by a generation callback
RawOutput = Any

# context -> RawOutput (sync callables are tolerated, awaited if needed)
TaskExecutor = Callable[[Mapping[str, Any]], Union[Awaitable[RawOutput], RawOutput]]

# RawOutput -> ValidationOutcome | {"valid", "issues"} | bool
OutputValidatorFn = Callable[[RawOutput], Any]

# task_name -> allowed
Authorizer = Callable[[str], bool]


# ═══════════════════════════════════════════════════════════════════════════════
# VALIDATION SCHEMA
# ═══════════════════════════════════════════════════════════════════════════════

class FieldType(Enum):
    """Primitive type tags a ValidationSchema may declare."""
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    BOOLEAN = "boolean"
    OBJECT = "object"


@dataclass(frozen=True)
class ValidationSchema:
    """
    Declarative structural contract for a generation output.

    `field_types` values may be FieldType members or their tag strings.
    create() checks them at construction; the plain constructor and
    from_dict() defer the check to first use, which still raises
    SchemaMisuse before any generation call.
    """
    required_fields: frozenset = frozenset()
    field_types: Mapping[str, Any] = field(default_factory=dict)
    require_reasoning_steps: bool = False

    @classmethod
    def create(
        cls,
        required_fields: Iterable[str] = (),
        field_types: Optional[Mapping[str, Any]] = None,
        require_reasoning_steps: bool = False,
    ) -> "ValidationSchema":
        """
        Factory that checks the schema immediately.

        Tag strings are normalized to FieldType members.

        Raises:
            SchemaMisuse: unknown tag or malformed field names
        """
        from reasoning.validator import resolve_field_types

        if isinstance(required_fields, str):
            required_fields = (required_fields,)
        schema = cls(
            required_fields=frozenset(required_fields),
            field_types=dict(field_types or {}),
            require_reasoning_steps=bool(require_reasoning_steps),
        )
        return cls(
            required_fields=schema.required_fields,
            field_types=resolve_field_types(schema),
            require_reasoning_steps=schema.require_reasoning_steps,
        )

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ValidationSchema":
        """Build from a plain mapping (camelCase or snake_case keys)."""
        required = d.get("required_fields", d.get("requiredFields", ()))
        field_types = d.get("field_types", d.get("fieldTypes", {}))
        require_steps = d.get(
            "require_reasoning_steps",
            d.get("requireReasoningSteps", False),
        )
        return cls(
            required_fields=frozenset(required),
            field_types=dict(field_types),
            require_reasoning_steps=bool(require_steps),
        )

    def to_dict(self) -> dict:
        return {
            "required_fields": sorted(self.required_fields),
            "field_types": {
                name: tag.value if isinstance(tag, FieldType) else tag
                for name, tag in self.field_types.items()
            },
            "require_reasoning_steps": self.require_reasoning_steps,
        }


@dataclass(frozen=True)
class ValidationOutcome:
    """
    Verdict of one or more validation checks.

    INVARIANT: valid is True iff issues is empty.
    """
    valid: bool
    issues: tuple[str, ...]
    score: float
    checks_passed: int = 0
    checks_attempted: int = 0

    @staticmethod
    def from_counts(
        issues: list[str],
        checks_passed: int,
        checks_attempted: int,
    ) -> "ValidationOutcome":
        """Score = passed / attempted; 1.0 only when nothing failed."""
        if not issues:
            score = 1.0
        elif checks_attempted == 0:
            score = 0.0
        else:
            score = checks_passed / checks_attempted
        return ValidationOutcome(
            valid=not issues,
            issues=tuple(issues),
            score=score,
            checks_passed=checks_passed,
            checks_attempted=checks_attempted,
        )

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "issues": list(self.issues),
            "score": round(self.score, 4),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# REASONING STEPS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ReasoningStep:
    """
    One reported reasoning stage.

    `stage` is None when the model used a label outside the taxonomy; the
    raw label is kept in `label`. Confidence is clamped to 0-1 here; the
    unclamped value stays on the raw payload for the business validators.
    """
    stage: Optional[ReasoningStage]
    findings: tuple[str, ...] = ()
    confidence: Optional[float] = None
    label: str = ""

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["ReasoningStep"]:
        """Parse one `reasoning_steps` entry; None if it is not an object."""
        if not isinstance(raw, Mapping):
            return None

        label = raw.get("stage", raw.get("action", ""))
        findings = raw.get("findings", raw.get("observations", ()))
        if isinstance(findings, str):
            findings = (findings,)
        elif not isinstance(findings, (list, tuple)):
            findings = ()

        confidence = raw.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            confidence = None
        else:
            confidence = clamp_confidence(confidence)

        return cls(
            stage=parse_stage(label),
            findings=tuple(str(f) for f in findings),
            confidence=confidence,
            label=str(label),
        )

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value if self.stage else None,
            "label": self.label,
            "findings": list(self.findings),
            "confidence": self.confidence,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# TASKS
# ═══════════════════════════════════════════════════════════════════════════════

class ExecutionPhase(Enum):
    """Single-path state machine: NEW → EXECUTING → VALIDATING → COMPLETE."""
    NEW = "new"
    EXECUTING = "executing"
    VALIDATING = "validating"
    COMPLETE = "complete"


@dataclass(frozen=True)
class ReasoningTask:
    """One reasoning job bound to a single generation callback."""
    task_name: str
    executor: TaskExecutor
    context: Mapping[str, Any] = field(default_factory=dict)
    output_schema: Optional[ValidationSchema] = None
    validator: Optional[OutputValidatorFn] = None
    correlation_id: Optional[str] = None
    authorizer: Optional[Authorizer] = None


@dataclass(frozen=True)
class DualPathTask:
    """
    One reasoning job analysed twice, independently.

    Each path gets a private deep copy of `context`; when a perspective is
    given it is placed in that copy under the "perspective" key.
    """
    task_name: str
    executor_a: TaskExecutor
    executor_b: TaskExecutor
    context: Mapping[str, Any] = field(default_factory=dict)
    output_schema: Optional[ValidationSchema] = None
    validator: Optional[OutputValidatorFn] = None
    correlation_id: Optional[str] = None
    authorizer: Optional[Authorizer] = None
    perspective_a: Optional[str] = None
    perspective_b: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ReasoningResult:
    """
    Final result of a single-path execution.

    Returned whether or not validation passed; callers decide whether an
    unvalidated answer is usable.
    """
    task_name: str
    final_answer: RawOutput
    reasoning_steps: tuple[ReasoningStep, ...]
    stages_completed: tuple[ReasoningStage, ...]
    confidence: float
    validated: bool
    validation_issues: tuple[str, ...]
    execution_time_ms: int
    validation_score: float = 1.0
    attempts: int = 1
    correlation_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "task_name": self.task_name,
            "final_answer": self.final_answer,
            "reasoning_steps": [s.to_dict() for s in self.reasoning_steps],
            "stages_completed": [s.value for s in self.stages_completed],
            "confidence": round(self.confidence, 4),
            "validated": self.validated,
            "validation_issues": list(self.validation_issues),
            "validation_score": round(self.validation_score, 4),
            "execution_time_ms": self.execution_time_ms,
            "attempts": self.attempts,
            "correlation_id": self.correlation_id,
        }


class ResolutionMethod(Enum):
    """How a dual-path answer was chosen."""
    CONSENSUS_MERGE = "consensus_merge"
    PREFER_A = "prefer_a"
    PREFER_B = "prefer_b"
    FAILED_PARTIAL = "failed_partial"


@dataclass(frozen=True)
class DualPathResult:
    """
    Reconciled result of two independent analyses.

    Both path results are kept for audit. Under FAILED_PARTIAL the failed
    path's result is None and its error is in `path_errors`.
    """
    result_a: Optional[ReasoningResult]
    result_b: Optional[ReasoningResult]
    agreement_score: float
    resolution_method: ResolutionMethod
    final_answer: RawOutput
    path_errors: Mapping[str, dict] = field(default_factory=dict)
    correlation_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "final_answer": self.final_answer,
            "reasoning_quality": {
                "agreement_score": round(self.agreement_score, 4),
                "resolution_method": self.resolution_method.value,
            },
            "result_a": self.result_a.to_dict() if self.result_a else None,
            "result_b": self.result_b.to_dict() if self.result_b else None,
            "path_errors": dict(self.path_errors),
            "correlation_id": self.correlation_id,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# METRICS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class MetricEvent:
    """Timed metric tagged with the request's correlation id."""
    name: str
    value: float
    correlation_id: str
    tags: dict = field(default_factory=dict)
    timestamp: str = ""

    @staticmethod
    def create(
        name: str,
        value: float,
        correlation_id: str,
        tags: Optional[dict] = None,
    ) -> "MetricEvent":
        """Factory method with auto-generated UTC timestamp."""
        return MetricEvent(
            name=name,
            value=value,
            correlation_id=correlation_id,
            tags=dict(tags or {}),
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )

    def to_dict(self) -> dict:
        return {
            "level": "METRIC",
            "metric": self.name,
            "value": self.value,
            "correlation_id": self.correlation_id,
            "tags": self.tags,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)
