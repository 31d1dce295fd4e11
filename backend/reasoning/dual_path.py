"""
Dual Path Reasoner: two independent analyses, one reconciled answer.

A (executor_a) ─┐
                ├─ TaskGroup join ─→ compare ─→ resolve
B (executor_b) ─┘

Resolution:
- both succeed, agreement >= threshold  → CONSENSUS_MERGE (union of lists)
- both succeed, agreement <  threshold  → PREFER_A / PREFER_B by validation score
- exactly one fails                     → FAILED_PARTIAL, survivor's answer
- both fail                             → GenerationFailure

Both paths always settle before resolution: there is no early exit on the
first success, since agreement needs both answers.
"""
import asyncio
import copy
import json
import logging
import math
import os
from typing import Any, Callable, Iterable, Mapping, Optional

from reasoning.errors import AuthorizationDenied, GenerationFailure
from reasoning.executor import SingleAttemptExecutor
from reasoning.telemetry import (
    TelemetryManager,
    correlation_logger,
    generate_correlation_id,
    get_telemetry,
)
from reasoning.types import (
    DualPathResult,
    DualPathTask,
    ExecutionPhase,
    ReasoningResult,
    ReasoningTask,
    ResolutionMethod,
)
from reasoning.validator import REASONING_STEPS_FIELD, resolve_field_types

logger = logging.getLogger(__name__)

# Configuration
CONSENSUS_THRESHOLD = float(os.getenv("REASONING_CONSENSUS_THRESHOLD", "0.8"))

METRIC_RESOLUTION = "dual_path_resolution"
PERSPECTIVE_KEY = "perspective"

SEVERITY_RANK = {
    "critical": 4,
    "high": 3,
    "medium": 2,
    "low": 1,
    "info": 0,
}

DEFAULT_CATEGORICAL_FIELDS = ("risk_level", "severity", "status", "classification")
ITEM_KEY_FIELDS = ("title", "name", "id")

# Fields describing how an answer was reached, not what it says
EXCLUDED_FIELDS = frozenset({REASONING_STEPS_FIELD})

# (answer_a, answer_b) -> agreement in [0, 1]
Comparator = Callable[[Any, Any], float]


# ═══════════════════════════════════════════════════════════════════════════════
# ITEM KEYS
# ═══════════════════════════════════════════════════════════════════════════════

def _normalize(value: Any) -> str:
    return " ".join(str(value).split()).lower()


def item_key(item: Any) -> str:
    """
    Identity of a list item for overlap and de-duplication.

    Objects are keyed by title, name or id (first present); strings by
    normalized text; anything else by its canonical JSON.
    """
    if isinstance(item, Mapping):
        for key_field in ITEM_KEY_FIELDS:
            value = item.get(key_field)
            if value not in (None, ""):
                return f"{key_field}:{_normalize(value)}"
        return json.dumps(item, sort_keys=True, default=str)
    if isinstance(item, str):
        return _normalize(item)
    return json.dumps(item, sort_keys=True, default=str)


def severity_rank(item: Any) -> int:
    """Rank of an item's `severity`; -1 when absent or unrecognised."""
    if not isinstance(item, Mapping):
        return -1
    return SEVERITY_RANK.get(_normalize(item.get("severity", "")), -1)


# ═══════════════════════════════════════════════════════════════════════════════
# AGREEMENT
# ═══════════════════════════════════════════════════════════════════════════════

class AgreementComparator:
    """
    Default agreement between two answers.

    agreement = categorical_fraction × mean(list overlap)

    - categorical_fraction: share of categorical fields (present and
      non-null in both answers) whose normalized values match
    - list overlap: |A ∩ B| / |A ∪ B| of item keys, per list-valued field
      present in either answer

    A kind with nothing to compare contributes 1.0. Two answers with no
    comparable facets at all agree only if they are equal. Symmetric in
    its arguments by construction.
    """

    def __init__(
        self,
        categorical_fields: Iterable[str] = DEFAULT_CATEGORICAL_FIELDS,
        excluded_fields: Iterable[str] = EXCLUDED_FIELDS,
    ):
        self.categorical_fields = tuple(categorical_fields)
        self.excluded_fields = frozenset(excluded_fields)

    def __call__(self, answer_a: Any, answer_b: Any) -> float:
        return self.compare(answer_a, answer_b)

    def categorical_agreement(self, answer_a: Mapping, answer_b: Mapping) -> Optional[float]:
        """Fraction of shared categorical fields that match, None if none are shared."""
        compared = [
            name for name in self.categorical_fields
            if answer_a.get(name) is not None and answer_b.get(name) is not None
        ]
        if not compared:
            return None
        matches = sum(
            1 for name in compared
            if _normalize(answer_a[name]) == _normalize(answer_b[name])
        )
        return matches / len(compared)

    def list_fields(self, answer_a: Mapping, answer_b: Mapping) -> list[str]:
        names = set()
        for answer in (answer_a, answer_b):
            names.update(
                name for name, value in answer.items()
                if isinstance(value, (list, tuple)) and name not in self.excluded_fields
            )
        return sorted(names, key=str)

    def list_overlap(self, items_a: Any, items_b: Any) -> float:
        """Jaccard overlap of item keys; two empty lists overlap fully."""
        keys_a = {item_key(i) for i in items_a or ()}
        keys_b = {item_key(i) for i in items_b or ()}
        union = keys_a | keys_b
        if not union:
            return 1.0
        return len(keys_a & keys_b) / len(union)

    def compare(self, answer_a: Any, answer_b: Any) -> float:
        if not isinstance(answer_a, Mapping) or not isinstance(answer_b, Mapping):
            return 1.0 if answer_a == answer_b else 0.0

        categorical = self.categorical_agreement(answer_a, answer_b)
        overlaps = [
            self.list_overlap(_as_list(answer_a.get(name)), _as_list(answer_b.get(name)))
            for name in self.list_fields(answer_a, answer_b)
        ]

        if categorical is None and not overlaps:
            return 1.0 if answer_a == answer_b else 0.0

        categorical_part = 1.0 if categorical is None else categorical
        list_part = sum(overlaps) / len(overlaps) if overlaps else 1.0
        return max(0.0, min(1.0, categorical_part * list_part))


def _as_list(value: Any) -> list:
    return list(value) if isinstance(value, (list, tuple)) else []


# ═══════════════════════════════════════════════════════════════════════════════
# CONSENSUS MERGE
# ═══════════════════════════════════════════════════════════════════════════════

def merge_lists(items_a: Iterable[Any], items_b: Iterable[Any]) -> list:
    """
    Union of two item lists, A's order first.

    Items sharing a key collapse to the higher-severity entry; on a tie the
    entry seen first (A's) is kept in place.
    """
    merged: list = []
    positions: dict[str, int] = {}
    for item in list(items_a) + list(items_b):
        key = item_key(item)
        if key not in positions:
            positions[key] = len(merged)
            merged.append(copy.deepcopy(item))
        elif severity_rank(item) > severity_rank(merged[positions[key]]):
            merged[positions[key]] = copy.deepcopy(item)
    return merged


def merge_answers(
    answer_a: Any,
    answer_b: Any,
    excluded_fields: Iterable[str] = EXCLUDED_FIELDS,
) -> Any:
    """
    Consensus answer from two agreeing answers.

    Starts from a copy of A. List fields become the union of both sides;
    fields only B reports are added, lists de-duplicated. Neither input is modified.
    """
    if not isinstance(answer_a, Mapping) or not isinstance(answer_b, Mapping):
        return copy.deepcopy(answer_a)

    excluded = frozenset(excluded_fields)
    merged = copy.deepcopy(dict(answer_a))

    for name, value_b in answer_b.items():
        if name not in merged:
            if name not in excluded and isinstance(value_b, (list, tuple)):
                merged[name] = merge_lists(value_b, ())
            else:
                merged[name] = copy.deepcopy(value_b)
            continue
        value_a = merged[name]
        if (
            name not in excluded
            and isinstance(value_a, (list, tuple))
            and isinstance(value_b, (list, tuple))
        ):
            merged[name] = merge_lists(value_a, value_b)

    return merged


# ═══════════════════════════════════════════════════════════════════════════════
# DUAL PATH REASONER
# ═══════════════════════════════════════════════════════════════════════════════

class DualPathReasoner:
    """
    Runs one task through two executors concurrently and reconciles them.

    Usage:
        reasoner = DualPathReasoner()
        result = await reasoner.execute_dual_path(task)

        print(result.resolution_method, result.agreement_score)
    """

    def __init__(
        self,
        executor: Optional[SingleAttemptExecutor] = None,
        comparator: Optional[Comparator] = None,
        consensus_threshold: Optional[float] = None,
        telemetry: Optional[TelemetryManager] = None,
    ):
        """
        Initialize the reasoner.

        Args:
            executor: Runs each path (shares the telemetry manager when built here)
            comparator: Agreement function (AgreementComparator by default)
            consensus_threshold: Minimum agreement for CONSENSUS_MERGE
            telemetry: Metric router (global manager by default)
        """
        self._telemetry = telemetry
        self.executor = executor or SingleAttemptExecutor(telemetry=telemetry)
        self.comparator = comparator or AgreementComparator()
        self.consensus_threshold = (
            CONSENSUS_THRESHOLD if consensus_threshold is None else consensus_threshold
        )

    @property
    def telemetry(self) -> TelemetryManager:
        return self._telemetry or get_telemetry()

    def build_path_task(
        self,
        task: DualPathTask,
        label: str,
        executor: Any,
        perspective: Optional[str],
        correlation_id: str,
    ) -> ReasoningTask:
        """One path's task: private context copy, shared schema and validator."""
        context = copy.deepcopy(dict(task.context))
        if perspective is not None:
            context[PERSPECTIVE_KEY] = perspective
        return ReasoningTask(
            task_name=f"{task.task_name}[{label}]",
            executor=executor,
            context=context,
            output_schema=task.output_schema,
            validator=task.validator,
            correlation_id=correlation_id,
        )

    async def _settle(
        self,
        path_task: ReasoningTask,
    ) -> tuple[Optional[ReasoningResult], Optional[GenerationFailure]]:
        """Run one path to completion, capturing its generation failure."""
        try:
            return await self.executor.execute(path_task), None
        except GenerationFailure as e:
            return None, e

    async def execute_dual_path(self, task: DualPathTask) -> DualPathResult:
        """
        Execute a task along two independent paths.

        Args:
            task: DualPathTask with executor_a and executor_b

        Returns:
            DualPathResult with both path results and the reconciled answer

        Raises:
            SchemaMisuse: malformed output schema (before either path starts)
            AuthorizationDenied: injected authorizer refused (before either path starts)
            GenerationFailure: both paths failed
        """
        correlation_id = task.correlation_id or generate_correlation_id()
        log = correlation_logger(__name__, correlation_id)

        if task.output_schema is not None:
            resolve_field_types(task.output_schema, task_name=task.task_name)
        if task.authorizer is not None and not task.authorizer(task.task_name):
            raise AuthorizationDenied(
                f"Task '{task.task_name}' not authorized",
                task_name=task.task_name,
                phase=ExecutionPhase.NEW.value,
            )

        path_a = self.build_path_task(
            task, "A", task.executor_a, task.perspective_a, correlation_id
        )
        path_b = self.build_path_task(
            task, "B", task.executor_b, task.perspective_b, correlation_id
        )

        log.info(f"Dual-path reasoning '{task.task_name}' started")
        async with asyncio.TaskGroup() as group:
            settle_a = group.create_task(self._settle(path_a))
            settle_b = group.create_task(self._settle(path_b))

        result_a, error_a = settle_a.result()
        result_b, error_b = settle_b.result()

        if error_a is not None and error_b is not None:
            log.error(
                f"Both paths failed for '{task.task_name}': "
                f"A={error_a.message} B={error_b.message}"
            )
            raise GenerationFailure(
                f"Both reasoning paths failed for '{task.task_name}'",
                task_name=task.task_name,
                phase=ExecutionPhase.EXECUTING.value,
                cause_type=error_a.cause_type,
                failures=[error_a, error_b],
            ) from error_a

        result = self.resolve(result_a, result_b, error_a, error_b, correlation_id)

        self.telemetry.emit(
            METRIC_RESOLUTION,
            round(result.agreement_score, 4),
            correlation_id,
            task=task.task_name,
            resolution_method=result.resolution_method.value,
            agreement_score=round(result.agreement_score, 4),
        )
        log.info(
            f"Dual-path reasoning '{task.task_name}' resolved by "
            f"{result.resolution_method.value} (agreement={result.agreement_score:.2f})"
        )
        return result

    def resolve(
        self,
        result_a: Optional[ReasoningResult],
        result_b: Optional[ReasoningResult],
        error_a: Optional[GenerationFailure] = None,
        error_b: Optional[GenerationFailure] = None,
        correlation_id: Optional[str] = None,
    ) -> DualPathResult:
        """Choose the final answer from two settled paths (at least one succeeded)."""
        if result_a is None or result_b is None:
            survivor = result_a if result_a is not None else result_b
            failed_label, failure = ("A", error_a) if result_a is None else ("B", error_b)
            logger.warning(
                f"Path {failed_label} failed, using surviving path: "
                f"{failure.message if failure else 'no result'}"
            )
            return DualPathResult(
                result_a=result_a,
                result_b=result_b,
                agreement_score=0.0,
                resolution_method=ResolutionMethod.FAILED_PARTIAL,
                final_answer=survivor.final_answer,
                path_errors={failed_label: failure.to_dict()} if failure else {},
                correlation_id=correlation_id,
            )

        agreement = float(self.comparator(result_a.final_answer, result_b.final_answer))
        if not math.isfinite(agreement):
            logger.warning(f"Comparator returned {agreement}, treating as no agreement")
            agreement = 0.0
        agreement = max(0.0, min(1.0, agreement))

        if agreement >= self.consensus_threshold:
            method = ResolutionMethod.CONSENSUS_MERGE
            final_answer = merge_answers(result_a.final_answer, result_b.final_answer)
        elif result_b.validation_score > result_a.validation_score:
            method = ResolutionMethod.PREFER_B
            final_answer = result_b.final_answer
        else:
            method = ResolutionMethod.PREFER_A
            final_answer = result_a.final_answer

        return DualPathResult(
            result_a=result_a,
            result_b=result_b,
            agreement_score=agreement,
            resolution_method=method,
            final_answer=final_answer,
            correlation_id=correlation_id,
        )


async def execute_dual_path(task: DualPathTask, **reasoner_kwargs: Any) -> DualPathResult:
    """
    Convenience function for one-off dual-path execution.

    Equivalent to DualPathReasoner(**reasoner_kwargs).execute_dual_path(task)
    """
    return await DualPathReasoner(**reasoner_kwargs).execute_dual_path(task)
