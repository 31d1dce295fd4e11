"""
Stage Sequencer: canonical reasoning stage taxonomy.

Five fixed stages, in order:

    INPUT_GATHERING → CONTEXTUAL_ANALYSIS → PROBLEM_IDENTIFICATION
        → RECOMMENDATION_GENERATION → OUTPUT_FORMATTING

Prompt builders reference the same taxonomy through
render_stage_instructions() and reasoning_steps_shape(), so the stages the
model is asked for and the stages the engine checks never drift apart.

Holds no mutable state and performs no I/O.
"""
import re
from enum import Enum
from typing import Any, Iterable, Optional


class ReasoningStage(Enum):
    INPUT_GATHERING = "input_gathering"
    CONTEXTUAL_ANALYSIS = "contextual_analysis"
    PROBLEM_IDENTIFICATION = "problem_identification"
    RECOMMENDATION_GENERATION = "recommendation_generation"
    OUTPUT_FORMATTING = "output_formatting"

    @property
    def position(self) -> int:
        """1-based position in the canonical order."""
        return CANONICAL_ORDER.index(self) + 1

    @property
    def title(self) -> str:
        return self.value.replace("_", " ").upper()

    @property
    def description(self) -> str:
        return STAGE_DESCRIPTIONS[self]


CANONICAL_ORDER: tuple[ReasoningStage, ...] = tuple(ReasoningStage)

STAGE_DESCRIPTIONS = {
    ReasoningStage.INPUT_GATHERING: (
        "Inventory the inputs, constraints and available evidence"
    ),
    ReasoningStage.CONTEXTUAL_ANALYSIS: (
        "Relate the inputs to each other and to their operating context"
    ),
    ReasoningStage.PROBLEM_IDENTIFICATION: (
        "Identify problems, risks and gaps supported by the evidence"
    ),
    ReasoningStage.RECOMMENDATION_GENERATION: (
        "Propose specific, prioritized remediations for each problem"
    ),
    ReasoningStage.OUTPUT_FORMATTING: (
        "Score, classify and structure the conclusions for the caller"
    ),
}

# Labels models commonly emit for the canonical stages
STAGE_ALIASES = {
    "gathering": ReasoningStage.INPUT_GATHERING,
    "input": ReasoningStage.INPUT_GATHERING,
    "context_analysis": ReasoningStage.CONTEXTUAL_ANALYSIS,
    "contextual": ReasoningStage.CONTEXTUAL_ANALYSIS,
    "problems": ReasoningStage.PROBLEM_IDENTIFICATION,
    "recommendations": ReasoningStage.RECOMMENDATION_GENERATION,
    "recommendation": ReasoningStage.RECOMMENDATION_GENERATION,
    "formatting": ReasoningStage.OUTPUT_FORMATTING,
    "output": ReasoningStage.OUTPUT_FORMATTING,
}

_NUMBER_PREFIX = re.compile(r"^\s*\d+\s*[.):-]?\s*")
_SEPARATORS = re.compile(r"[\s\-]+")


def parse_stage(value: Any) -> Optional[ReasoningStage]:
    """
    Resolve a stage label from model output.

    Accepts enum members, enum values, titles ("INPUT GATHERING"),
    numbered labels ("1. Input gathering"), 1-based positions and a small
    alias table. Returns None for anything outside the taxonomy.
    """
    if isinstance(value, ReasoningStage):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        if 1 <= value <= len(CANONICAL_ORDER):
            return CANONICAL_ORDER[value - 1]
        return None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if text.isdigit():
        return parse_stage(int(text))

    text = _NUMBER_PREFIX.sub("", text).rstrip(":").strip()
    key = _SEPARATORS.sub("_", text).lower()
    if not key:
        return None

    try:
        return ReasoningStage(key)
    except ValueError:
        return STAGE_ALIASES.get(key)


def stages_completed(steps: Iterable[Any]) -> tuple[ReasoningStage, ...]:
    """
    Canonical-order, de-duplicated stages present in `steps`.

    Steps are scanned in encounter order keeping the first occurrence of
    each stage; the result is then laid out in canonical order, so a model
    that reports stages out of order can never reorder the taxonomy.
    """
    seen: set[ReasoningStage] = set()
    for step in steps:
        stage = parse_stage(getattr(step, "stage", step))
        if stage is not None:
            seen.add(stage)
    return tuple(s for s in CANONICAL_ORDER if s in seen)


def missing_stages(steps: Iterable[Any]) -> tuple[ReasoningStage, ...]:
    """Canonical stages with no step reported."""
    completed = set(stages_completed(steps))
    return tuple(s for s in CANONICAL_ORDER if s not in completed)


def coverage(steps: Iterable[Any]) -> float:
    """Fraction of the taxonomy covered by `steps` (0.0-1.0)."""
    return len(stages_completed(steps)) / len(CANONICAL_ORDER)


def is_canonical_order(stages: Iterable[Any]) -> bool:
    """
    True if the stages never step backwards in the taxonomy.

    Repeats of the same stage are allowed; unknown labels fail the check.
    """
    last = 0
    for value in stages:
        stage = parse_stage(getattr(value, "stage", value))
        if stage is None or stage.position < last:
            return False
        last = stage.position
    return True


def render_stage_instructions(
    stages: Iterable[ReasoningStage] = CANONICAL_ORDER,
    header: str = "REASONING STAGES (follow these explicitly and document your thinking):",
) -> str:
    """Numbered stage block for inclusion in a caller-built prompt."""
    lines = [header, ""]
    for stage in stages:
        lines.append(f"{stage.position}. {stage.title}:")
        lines.append(f"   - {stage.description}")
        lines.append("")
    lines.append(
        "Report each stage in `reasoning_steps` with its stage id "
        f"({', '.join(s.value for s in CANONICAL_ORDER)}), "
        "your findings, and a confidence between 0 and 1."
    )
    return "\n".join(lines)


def reasoning_steps_shape() -> dict:
    """JSON-schema fragment describing `reasoning_steps` for the generation capability."""
    return {
        "type": "array",
        "items": {
            "type": "object",
            "properties": {
                "stage": {
                    "type": "string",
                    "enum": [s.value for s in CANONICAL_ORDER],
                },
                "findings": {"type": "array", "items": {"type": "string"}},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            },
            "required": ["stage", "findings", "confidence"],
        },
    }
