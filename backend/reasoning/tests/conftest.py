"""
Pytest fixtures for reasoning engine tests.
"""
import pytest
import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(BACKEND_DIR))

from reasoning.executor import SingleAttemptExecutor
from reasoning.dual_path import DualPathReasoner
from reasoning.generation import ScriptedGenerator
from reasoning.telemetry import MemoryMetricsSink, TelemetryManager
from reasoning.types import FieldType, ValidationSchema
from reasoning.validator import numeric_range_validator, required_item_fields_validator, compose_validators


@pytest.fixture
def memory_sink():
    """Memory-based metrics sink for testing."""
    return MemoryMetricsSink()


@pytest.fixture
def telemetry(memory_sink):
    """Telemetry manager routed only to the memory sink."""
    manager = TelemetryManager()
    manager.add_sink(memory_sink)
    yield manager
    manager.close()


@pytest.fixture
def executor(telemetry):
    return SingleAttemptExecutor(telemetry=telemetry)


@pytest.fixture
def reasoner(telemetry):
    return DualPathReasoner(telemetry=telemetry)


@pytest.fixture
def health_schema():
    """Schema for a system health analysis."""
    return ValidationSchema(
        required_fields=frozenset({"health_score", "bottlenecks"}),
        field_types={
            "health_score": FieldType.NUMBER,
            "bottlenecks": FieldType.ARRAY,
        },
    )


@pytest.fixture
def health_rules():
    """Business rule: health score is a percentage."""
    return numeric_range_validator("health_score", 0, 100)


@pytest.fixture
def scan_schema():
    """Schema for a security scan, as the generation capability is asked to return it."""
    return ValidationSchema.from_dict({
        "requiredFields": ["risk_level", "findings", "score"],
        "fieldTypes": {
            "risk_level": "string",
            "findings": "array",
            "score": "number",
        },
        "requireReasoningSteps": True,
    })


@pytest.fixture
def scan_rules():
    """Business rules for a security scan result."""
    return compose_validators(
        numeric_range_validator("score", 0, 100),
        required_item_fields_validator("findings", ("title", "severity")),
    )


@pytest.fixture
def full_steps():
    """One reasoning step per canonical stage."""
    return [
        {"stage": "input_gathering", "findings": ["3 services, 2 queues"], "confidence": 0.9},
        {"stage": "contextual_analysis", "findings": ["queue depth rising"], "confidence": 0.8},
        {"stage": "problem_identification", "findings": ["consumer lag"], "confidence": 0.85},
        {"stage": "recommendation_generation", "findings": ["scale consumers"], "confidence": 0.75},
        {"stage": "output_formatting", "findings": ["scored"], "confidence": 0.7},
    ]


@pytest.fixture
def scan_answer(full_steps):
    """Valid security scan payload (flat, steps at top level)."""
    return {
        "risk_level": "critical",
        "score": 35,
        "findings": [
            {"title": "SQL injection in login", "severity": "critical"},
            {"title": "Missing CSP header", "severity": "medium"},
            {"title": "Outdated TLS", "severity": "high"},
        ],
        "reasoning_steps": full_steps,
    }


@pytest.fixture
def scripted():
    """Factory for scripted generators."""
    def make(*responses, default=None, delay=0.0):
        return ScriptedGenerator(list(responses), default=default, delay=delay)
    return make
