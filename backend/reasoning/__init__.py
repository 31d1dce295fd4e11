"""
Reasoning Engine for metered, non-deterministic generation calls.

Single path: authorize → generate → validate → score → result
Dual path:   two single paths in one TaskGroup → compare → resolve

INVARIANTS (non-negotiable):
1. A generation callback runs exactly once per path unless a retry policy says otherwise
2. Validation issues are data: validated=True iff validation_issues is empty
3. stages_completed only holds canonical stages, in canonical order
4. Agreement and every confidence lie in [0, 1]; agreement is symmetric
5. A malformed schema fails before any generation call
"""
from reasoning.types import (
    FieldType,
    ValidationSchema,
    ValidationOutcome,
    ReasoningStep,
    ExecutionPhase,
    ReasoningTask,
    DualPathTask,
    ReasoningResult,
    ResolutionMethod,
    DualPathResult,
    MetricEvent,
)
from reasoning.errors import (
    ReasoningError,
    ValidationFailure,
    GenerationFailure,
    SchemaMisuse,
    AuthorizationDenied,
    ErrorCode,
    classify_error,
    error_payload,
)
from reasoning.stages import ReasoningStage, CANONICAL_ORDER
from reasoning.validator import validate_output, compose_validators
from reasoning.confidence import ConfidenceAggregator
from reasoning.executor import (
    SingleAttemptExecutor,
    RetryPolicy,
    NoRetry,
    RetryOnInvalid,
    execute_reasoning,
)
from reasoning.dual_path import (
    AgreementComparator,
    DualPathReasoner,
    execute_dual_path,
    merge_answers,
)

__all__ = [
    "SingleAttemptExecutor",
    "DualPathReasoner",
    "execute_reasoning",
    "execute_dual_path",
    "RetryPolicy",
    "NoRetry",
    "RetryOnInvalid",
    "AgreementComparator",
    "merge_answers",
    "ConfidenceAggregator",
    "validate_output",
    "compose_validators",
    "ReasoningStage",
    "CANONICAL_ORDER",
    "FieldType",
    "ValidationSchema",
    "ValidationOutcome",
    "ReasoningStep",
    "ExecutionPhase",
    "ReasoningTask",
    "DualPathTask",
    "ReasoningResult",
    "ResolutionMethod",
    "DualPathResult",
    "MetricEvent",
    "ReasoningError",
    "ValidationFailure",
    "GenerationFailure",
    "SchemaMisuse",
    "AuthorizationDenied",
    "ErrorCode",
    "classify_error",
    "error_payload",
]
