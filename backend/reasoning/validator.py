"""
Output Validator: structural checks for generation output.

validate_output(output, schema) -> ValidationOutcome

Three kinds of checks, each counted once:
- PRESENCE: every required field exists, at the top level or inside a
  nested `final_answer` (flat and wrapped payloads are both accepted)
- TYPE: every typed field that is present matches its FieldType tag
- STRUCTURE: `reasoning_steps` is a non-empty array when required

Domain rules (numeric ranges, confidence bounds, item shapes) are NOT
built in here. They are business validators composed on top, so the
structural check stays reusable across task types.

Validation issues are data, not control flow: nothing here raises on bad
output. Only a malformed schema raises, as SchemaMisuse.
"""
import logging
from typing import Any, Callable, Iterable, Mapping, Optional

from reasoning.errors import SchemaMisuse, ValidationFailure
from reasoning.types import FieldType, ValidationOutcome, ValidationSchema

logger = logging.getLogger(__name__)

REASONING_STEPS_FIELD = "reasoning_steps"
WRAPPED_ANSWER_FIELD = "final_answer"


# ═══════════════════════════════════════════════════════════════════════════════
# SCHEMA CHECKS (fail fast, before generation)
# ═══════════════════════════════════════════════════════════════════════════════

def resolve_field_types(
    schema: ValidationSchema,
    task_name: Optional[str] = None,
) -> dict[str, FieldType]:
    """
    Normalize a schema's type tags to FieldType members.

    Raises:
        SchemaMisuse: unknown tag, non-string field name, or malformed collections
    """
    if not isinstance(schema, ValidationSchema):
        raise SchemaMisuse(
            f"Expected ValidationSchema, got {type(schema).__name__}",
            task_name=task_name,
        )

    if isinstance(schema.required_fields, str):
        raise SchemaMisuse(
            "required_fields must be a collection of names, not a string",
            field_name=schema.required_fields,
            task_name=task_name,
        )
    for name in schema.required_fields:
        if not isinstance(name, str) or not name:
            raise SchemaMisuse(
                f"Required field name must be a non-empty string, got {name!r}",
                field_name=str(name),
                task_name=task_name,
            )

    if not isinstance(schema.field_types, Mapping):
        raise SchemaMisuse(
            f"field_types must be a mapping, got {type(schema.field_types).__name__}",
            task_name=task_name,
        )

    resolved: dict[str, FieldType] = {}
    for name, tag in schema.field_types.items():
        if not isinstance(name, str) or not name:
            raise SchemaMisuse(
                f"Typed field name must be a non-empty string, got {name!r}",
                field_name=str(name),
                type_tag=tag,
                task_name=task_name,
            )
        if isinstance(tag, FieldType):
            resolved[name] = tag
            continue
        try:
            resolved[name] = FieldType(tag)
        except ValueError:
            allowed = ", ".join(t.value for t in FieldType)
            raise SchemaMisuse(
                f"Unsupported type tag {tag!r} for field '{name}' (allowed: {allowed})",
                field_name=name,
                type_tag=tag,
                task_name=task_name,
            )
    return resolved


def validate_schema(schema: ValidationSchema) -> None:
    """Raise SchemaMisuse if `schema` cannot be used for validation."""
    resolve_field_types(schema)


# ═══════════════════════════════════════════════════════════════════════════════
# FIELD LOOKUP & TYPE CHECKS
# ═══════════════════════════════════════════════════════════════════════════════

def find_field(output: Any, name: str) -> tuple[bool, Any]:
    """
    Look up `name` at the top level, then inside a nested `final_answer`.

    Returns: (found, value)
    """
    if not isinstance(output, Mapping):
        return False, None
    if name in output:
        return True, output[name]
    wrapped = output.get(WRAPPED_ANSWER_FIELD)
    if isinstance(wrapped, Mapping) and name in wrapped:
        return True, wrapped[name]
    return False, None


def matches_type(value: Any, expected: FieldType) -> bool:
    """Runtime shape check against a type tag. Booleans are not numbers."""
    if expected == FieldType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == FieldType.STRING:
        return isinstance(value, str)
    if expected == FieldType.BOOLEAN:
        return isinstance(value, bool)
    if expected == FieldType.ARRAY:
        return isinstance(value, (list, tuple))
    if expected == FieldType.OBJECT:
        return isinstance(value, Mapping)
    return False


def describe_type(value: Any) -> str:
    """Type tag name for a runtime value, for issue messages."""
    if value is None:
        return "null"
    for tag in (FieldType.BOOLEAN, FieldType.NUMBER, FieldType.STRING,
                FieldType.ARRAY, FieldType.OBJECT):
        if matches_type(value, tag):
            return tag.value
    return type(value).__name__


def _format_number(value: Any) -> str:
    # ints are printed as-is; huge JSON integers overflow float formatting
    return f"{value:g}" if isinstance(value, float) else str(value)


# ═══════════════════════════════════════════════════════════════════════════════
# STRUCTURAL VALIDATION
# ═══════════════════════════════════════════════════════════════════════════════

def validate_output(
    output: Any,
    schema: Optional[ValidationSchema] = None,
) -> ValidationOutcome:
    """
    Validate generation output against a schema.

    Pure function: the same (output, schema) pair always yields the same
    outcome.

    Args:
        output: Raw generation output
        schema: Structural contract (None means nothing to check)

    Returns:
        ValidationOutcome with valid, issues and score

    Raises:
        SchemaMisuse: if the schema itself is malformed
    """
    if schema is None:
        return ValidationOutcome.from_counts([], 0, 0)

    field_types = resolve_field_types(schema)
    issues: list[str] = []
    attempted = 0
    passed = 0

    # PRESENCE
    for name in sorted(schema.required_fields):
        attempted += 1
        found, _ = find_field(output, name)
        if found:
            passed += 1
        else:
            issues.append(f"Missing required field: {name}")

    # TYPE (only fields that are present; absence is a presence concern)
    for name, expected in field_types.items():
        found, value = find_field(output, name)
        if not found:
            continue
        attempted += 1
        if matches_type(value, expected):
            passed += 1
        else:
            issues.append(
                f"Field '{name}' must be {expected.value}, got {describe_type(value)}"
            )

    # STRUCTURE
    if schema.require_reasoning_steps:
        attempted += 1
        found, steps = find_field(output, REASONING_STEPS_FIELD)
        if found and isinstance(steps, (list, tuple)) and steps:
            passed += 1
        else:
            issues.append(f"{REASONING_STEPS_FIELD} must be a non-empty array")

    return ValidationOutcome.from_counts(issues, passed, attempted)


# ═══════════════════════════════════════════════════════════════════════════════
# BUSINESS VALIDATORS (composed after the structural check)
# ═══════════════════════════════════════════════════════════════════════════════

Validator = Callable[[Any], Any]


def normalize_verdict(verdict: Any) -> ValidationOutcome:
    """
    Coerce a validator's return value into a ValidationOutcome.

    Accepts a ValidationOutcome, a {"valid", "issues"} mapping, a
    (valid, issues) tuple, a bare bool, or None (treated as a pass). An
    outcome carrying issues but no check counts is recounted as one failed
    check, so it can never score 1.0.
    A rejection with no issues gets a generic one so the
    valid ⇔ no-issues invariant holds.
    """
    if isinstance(verdict, ValidationOutcome):
        consistent = verdict.valid == (not verdict.issues)
        if consistent and (verdict.checks_attempted or verdict.valid):
            return verdict
        # Hand-built outcome without counts: treat as one check
        valid, issues = verdict.valid, list(verdict.issues)
    elif verdict is None:
        valid, issues = True, []
    elif isinstance(verdict, bool):
        valid, issues = verdict, []
    elif isinstance(verdict, Mapping):
        valid = bool(verdict.get("valid", False))
        issues = [str(i) for i in verdict.get("issues") or ()]
    elif isinstance(verdict, tuple) and len(verdict) == 2:
        valid, issues = bool(verdict[0]), [str(i) for i in verdict[1] or ()]
    else:
        valid, issues = False, [f"Validator returned unsupported verdict {type(verdict).__name__}"]

    if not valid and not issues:
        issues = ["Output rejected by validator"]
    if valid and issues:
        valid = False

    return ValidationOutcome.from_counts(issues, 0 if issues else 1, 1)


def run_validator(validator: Validator, output: Any) -> ValidationOutcome:
    """
    Run one caller validator, converting every failure mode into data.

    A raised ValidationFailure contributes its issues; any other exception
    is logged and recorded as a single issue naming the error.
    """
    try:
        return normalize_verdict(validator(output))
    except ValidationFailure as e:
        return ValidationOutcome.from_counts(list(e.issues), 0, 1)
    except Exception as e:
        name = getattr(validator, "__name__", type(validator).__name__)
        logger.warning(f"Validator {name} raised {type(e).__name__}: {e}")
        return ValidationOutcome.from_counts(
            [f"Validator {name} raised {type(e).__name__}: {e}"], 0, 1
        )


def merge_outcomes(outcomes: Iterable[ValidationOutcome]) -> ValidationOutcome:
    """Fold outcomes: issues concatenated, check counts summed."""
    issues: list[str] = []
    passed = 0
    attempted = 0
    for outcome in outcomes:
        issues.extend(outcome.issues)
        passed += outcome.checks_passed
        attempted += outcome.checks_attempted
    return ValidationOutcome.from_counts(issues, passed, attempted)


def compose_validators(*validators: Validator) -> Validator:
    """Run every validator and fold their outcomes into one."""
    def composed(output: Any) -> ValidationOutcome:
        return merge_outcomes(run_validator(v, output) for v in validators)

    composed.__name__ = "composed(" + ", ".join(
        getattr(v, "__name__", type(v).__name__) for v in validators
    ) + ")"
    return composed


def numeric_range_validator(
    field_name: str,
    minimum: float,
    maximum: float,
    required: bool = False,
) -> Validator:
    """Business rule: `field_name` must be a number in [minimum, maximum]."""
    def check(output: Any) -> ValidationOutcome:
        found, value = find_field(output, field_name)
        if not found:
            if required:
                return ValidationOutcome.from_counts(
                    [f"Missing required field: {field_name}"], 0, 1
                )
            return ValidationOutcome.from_counts([], 0, 0)
        if not matches_type(value, FieldType.NUMBER):
            return ValidationOutcome.from_counts(
                [f"{field_name} must be a number, got {describe_type(value)}"], 0, 1
            )
        if not (minimum <= value <= maximum):
            return ValidationOutcome.from_counts(
                [f"{field_name} must be between {minimum:g} and {maximum:g}, got {_format_number(value)}"],
                0,
                1,
            )
        return ValidationOutcome.from_counts([], 1, 1)

    check.__name__ = f"range({field_name})"
    return check


def confidence_range_validator(overall_field: str = "overall_confidence") -> Validator:
    """
    Business rule: every reported confidence lies in [0, 1].

    Checks each `reasoning_steps[i].confidence` and the optional overall
    confidence field. Structural validation never range-checks these.
    """
    def check(output: Any) -> ValidationOutcome:
        issues: list[str] = []
        attempted = 0

        found, steps = find_field(output, REASONING_STEPS_FIELD)
        if found and isinstance(steps, (list, tuple)):
            for i, step in enumerate(steps):
                if not isinstance(step, Mapping) or "confidence" not in step:
                    continue
                attempted += 1
                value = step["confidence"]
                if not matches_type(value, FieldType.NUMBER):
                    issues.append(
                        f"{REASONING_STEPS_FIELD}[{i}].confidence must be a number, "
                        f"got {describe_type(value)}"
                    )
                elif not (0.0 <= value <= 1.0):
                    issues.append(
                        f"{REASONING_STEPS_FIELD}[{i}].confidence must be between 0 and 1, got {_format_number(value)}"
                    )

        found, overall = find_field(output, overall_field)
        if found:
            attempted += 1
            if not matches_type(overall, FieldType.NUMBER) or not (0.0 <= overall <= 1.0):
                issues.append(f"{overall_field} must be a number between 0 and 1")

        return ValidationOutcome.from_counts(issues, attempted - len(issues), attempted)

    check.__name__ = "confidence_range"
    return check


def required_item_fields_validator(field_name: str, keys: Iterable[str]) -> Validator:
    """Business rule: each object in the `field_name` array carries every key in `keys`."""
    keys = tuple(keys)

    def check(output: Any) -> ValidationOutcome:
        found, items = find_field(output, field_name)
        if not found or not isinstance(items, (list, tuple)):
            return ValidationOutcome.from_counts([], 0, 0)

        issues = []
        for i, item in enumerate(items):
            if not isinstance(item, Mapping):
                issues.append(f"{field_name}[{i}] must be an object")
                continue
            absent = [k for k in keys if not item.get(k)]
            if absent:
                issues.append(f"{field_name}[{i}] missing {', '.join(absent)}")

        return ValidationOutcome.from_counts(issues, len(items) - len(issues), len(items))

    check.__name__ = f"item_fields({field_name})"
    return check
