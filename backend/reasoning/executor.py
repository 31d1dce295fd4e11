"""
Single Attempt Executor: one task, one generation call, one result.

NEW → EXECUTING → VALIDATING → COMPLETE

1. NEW        - schema checked (SchemaMisuse) and authorizer consulted,
                both before any generation call
2. EXECUTING  - the task's generation callback is awaited exactly once
3. VALIDATING - structural validation, then business validators; issues
                are recorded, never raised
4. COMPLETE   - stages, confidence and timing stamped, metric emitted

A generation failure aborts before VALIDATING and propagates as
GenerationFailure. Validation failure is not retried: the engine never
re-queries the metered generation capability on its own initiative. A
RetryPolicy can be supplied by the caller to opt into re-invocation.
"""
import asyncio
import inspect
import logging
import time
from dataclasses import replace
from typing import Any, Iterable, Mapping, Optional

from reasoning.confidence import ConfidenceAggregator
from reasoning.errors import AuthorizationDenied, GenerationFailure
from reasoning.stages import stages_completed
from reasoning.telemetry import (
    TelemetryManager,
    correlation_logger,
    generate_correlation_id,
    get_telemetry,
)
from reasoning.types import (
    ExecutionPhase,
    ReasoningResult,
    ReasoningStep,
    ReasoningTask,
    ValidationOutcome,
)
from reasoning.validator import (
    REASONING_STEPS_FIELD,
    WRAPPED_ANSWER_FIELD,
    Validator,
    confidence_range_validator,
    find_field,
    merge_outcomes,
    resolve_field_types,
    run_validator,
    validate_output,
)

logger = logging.getLogger(__name__)

METRIC_EXECUTION = "reasoning_execution"

# Business rules applied to every execution after the task's own validator
DEFAULT_BUSINESS_VALIDATORS: tuple[Validator, ...] = (confidence_range_validator(),)


# ═══════════════════════════════════════════════════════════════════════════════
# RETRY POLICIES (extension point, off by default)
# ═══════════════════════════════════════════════════════════════════════════════

class RetryPolicy:
    """Decides whether a completed attempt should be re-invoked."""

    def should_retry(self, result: ReasoningResult, attempt: int) -> bool:
        raise NotImplementedError


class NoRetry(RetryPolicy):
    """Default: every task runs its generation callback exactly once."""

    def should_retry(self, result: ReasoningResult, attempt: int) -> bool:
        return False


class RetryOnInvalid(RetryPolicy):
    """Re-invoke while the output fails validation, up to `max_attempts` in total."""

    def __init__(self, max_attempts: int):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts

    def should_retry(self, result: ReasoningResult, attempt: int) -> bool:
        return not result.validated and attempt < self.max_attempts


# ═══════════════════════════════════════════════════════════════════════════════
# OUTPUT HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def extract_final_answer(output: Any) -> Any:
    """Unwrap `{"final_answer": ...}` payloads; flat payloads are the answer."""
    if isinstance(output, Mapping) and WRAPPED_ANSWER_FIELD in output:
        return output[WRAPPED_ANSWER_FIELD]
    return output


def extract_reasoning_steps(output: Any) -> tuple[ReasoningStep, ...]:
    """Parse `reasoning_steps` (top level or wrapped), skipping non-object entries."""
    found, raw_steps = find_field(output, REASONING_STEPS_FIELD)
    if not found or not isinstance(raw_steps, (list, tuple)):
        return ()
    steps = (ReasoningStep.from_raw(raw) for raw in raw_steps)
    return tuple(s for s in steps if s is not None)


# ═══════════════════════════════════════════════════════════════════════════════
# EXECUTOR
# ═══════════════════════════════════════════════════════════════════════════════

class SingleAttemptExecutor:
    """
    Drives one reasoning task through one generation callback.

    Usage:
        executor = SingleAttemptExecutor()
        result = await executor.execute(task)

        if result.validated:
            # Use result.final_answer
            pass
        else:
            # Partially trusted: inspect result.validation_issues
            pass
    """

    def __init__(
        self,
        aggregator: Optional[ConfidenceAggregator] = None,
        retry_policy: Optional[RetryPolicy] = None,
        business_validators: Iterable[Validator] = DEFAULT_BUSINESS_VALIDATORS,
        telemetry: Optional[TelemetryManager] = None,
    ):
        """
        Initialize the executor.

        Args:
            aggregator: Confidence aggregation strategy (mean by default)
            retry_policy: Re-invocation policy (NoRetry by default)
            business_validators: Rules run after the task's own validator
            telemetry: Metric router (global manager by default)
        """
        self.aggregator = aggregator or ConfidenceAggregator()
        self.retry_policy = retry_policy or NoRetry()
        self.business_validators = tuple(business_validators)
        self._telemetry = telemetry

    @property
    def telemetry(self) -> TelemetryManager:
        return self._telemetry or get_telemetry()

    async def execute(self, task: ReasoningTask) -> ReasoningResult:
        """
        Execute a reasoning task.

        Args:
            task: Task with name, context, executor and optional schema/validator

        Returns:
            ReasoningResult, whether or not the output validated

        Raises:
            SchemaMisuse: malformed output schema (before generation)
            AuthorizationDenied: injected authorizer refused (before generation)
            GenerationFailure: the generation callback failed
        """
        correlation_id = task.correlation_id or generate_correlation_id()
        log = correlation_logger(__name__, correlation_id)

        # NEW: fail fast before spending a generation call
        if task.output_schema is not None:
            resolve_field_types(task.output_schema, task_name=task.task_name)
        if task.authorizer is not None and not task.authorizer(task.task_name):
            raise AuthorizationDenied(
                f"Task '{task.task_name}' not authorized",
                task_name=task.task_name,
                phase=ExecutionPhase.NEW.value,
            )

        log.info(f"Reasoning '{task.task_name}' started, context keys={sorted(map(str, task.context))}")
        start_time = time.perf_counter()
        attempt = 0

        while True:
            attempt += 1
            output = await self._invoke(task, log)
            result = self._assemble(task, output, attempt, correlation_id, log)
            if not self.retry_policy.should_retry(result, attempt):
                break
            log.warning(
                f"Reasoning '{task.task_name}' attempt {attempt} invalid, retrying: "
                f"{list(result.validation_issues)}"
            )

        elapsed_ms = max(0, int((time.perf_counter() - start_time) * 1000))
        result = replace(result, execution_time_ms=elapsed_ms)
        log.debug(f"Reasoning '{task.task_name}' phase={ExecutionPhase.COMPLETE.value}")

        self.telemetry.emit(
            METRIC_EXECUTION,
            elapsed_ms,
            correlation_id,
            task=task.task_name,
            stage_count=len(result.stages_completed),
            confidence=round(result.confidence, 4),
            validated=result.validated,
            attempts=result.attempts,
        )
        log.info(
            f"Reasoning '{task.task_name}' complete in {elapsed_ms}ms: "
            f"validated={result.validated} confidence={result.confidence:.2f} "
            f"({self.aggregator.band(result.confidence)})"
        )
        return result

    async def _invoke(self, task: ReasoningTask, log: logging.LoggerAdapter) -> Any:
        """EXECUTING: await the generation callback once, wrapping every failure."""
        log.debug(f"Reasoning '{task.task_name}' phase={ExecutionPhase.EXECUTING.value}")
        phase = ExecutionPhase.EXECUTING.value

        try:
            output = task.executor(task.context)
            if inspect.isawaitable(output):
                output = await output
            return output

        except GenerationFailure as e:
            e.task_name = e.task_name or task.task_name
            e.phase = e.phase or phase
            log.error(f"Generation failed for '{task.task_name}': {e.message}")
            raise

        except asyncio.CancelledError as e:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                # Our own caller is cancelling us: let cancellation propagate
                raise
            log.error(f"Generation cancelled for '{task.task_name}'")
            raise GenerationFailure(
                f"Generation for '{task.task_name}' was cancelled",
                task_name=task.task_name,
                phase=phase,
                cause_type="CancelledError",
            ) from e

        except Exception as e:
            log.error(f"Generation failed for '{task.task_name}': {type(e).__name__}: {e}")
            raise GenerationFailure(
                f"Generation for '{task.task_name}' failed: {e}",
                task_name=task.task_name,
                phase=phase,
                cause_type=type(e).__name__,
            ) from e

    def _validate(self, task: ReasoningTask, output: Any) -> ValidationOutcome:
        """VALIDATING: structural check, then task validator, then business rules."""
        outcomes = [validate_output(output, task.output_schema)]
        if task.validator is not None:
            outcomes.append(run_validator(task.validator, output))
        for validator in self.business_validators:
            outcomes.append(run_validator(validator, output))
        return merge_outcomes(outcomes)

    def _assemble(
        self,
        task: ReasoningTask,
        output: Any,
        attempt: int,
        correlation_id: str,
        log: logging.LoggerAdapter,
    ) -> ReasoningResult:
        log.debug(f"Reasoning '{task.task_name}' phase={ExecutionPhase.VALIDATING.value}")
        outcome = self._validate(task, output)
        if not outcome.valid:
            log.warning(f"Validation failed for '{task.task_name}': {list(outcome.issues)}")

        steps = extract_reasoning_steps(output)
        confidence = self.aggregator.aggregate(steps, fallback=outcome.score)

        return ReasoningResult(
            task_name=task.task_name,
            final_answer=extract_final_answer(output),
            reasoning_steps=steps,
            stages_completed=stages_completed(steps),
            confidence=confidence,
            validated=outcome.valid,
            validation_issues=outcome.issues,
            execution_time_ms=0,
            validation_score=outcome.score,
            attempts=attempt,
            correlation_id=correlation_id,
        )


async def execute_reasoning(task: ReasoningTask, **executor_kwargs: Any) -> ReasoningResult:
    """
    Convenience function for one-off execution.

    Equivalent to SingleAttemptExecutor(**executor_kwargs).execute(task)
    """
    return await SingleAttemptExecutor(**executor_kwargs).execute(task)
