"""
Tests for the DualPathReasoner, agreement scoring and consensus merge.
"""
import asyncio
import copy

import pytest

from reasoning.dual_path import (
    METRIC_RESOLUTION,
    AgreementComparator,
    DualPathReasoner,
    execute_dual_path,
    item_key,
    merge_answers,
)
from reasoning.errors import AuthorizationDenied, GenerationFailure, SchemaMisuse
from reasoning.types import DualPathTask, ResolutionMethod, ValidationSchema
from reasoning.validator import numeric_range_validator


def finding(title, severity="medium"):
    return {"title": title, "severity": severity}


@pytest.fixture
def answer_a():
    return {
        "risk_level": "critical",
        "score": 30,
        "findings": [
            finding("SQL injection", "critical"),
            finding("Missing CSP header"),
            finding("Outdated TLS", "medium"),
        ],
    }


@pytest.fixture
def answer_b():
    """Same risk level; three of four finding titles shared with A."""
    return {
        "risk_level": "Critical",
        "score": 25,
        "findings": [
            finding("sql  injection", "critical"),
            finding("Missing CSP header"),
            finding("Outdated TLS", "high"),
            finding("Open admin port", "high"),
        ],
        "owner": "platform-team",
    }


class TestAgreementComparator:
    """Tests for the default agreement score."""

    def test_overlapping_findings(self, answer_a, answer_b):
        """Scenario: both critical, 3 of 4 titles shared → 0.75."""
        assert AgreementComparator()(answer_a, answer_b) == pytest.approx(0.75)

    def test_symmetric(self, answer_a, answer_b):
        comparator = AgreementComparator()
        pairs = [
            (answer_a, answer_b),
            ({"risk_level": "low"}, {"risk_level": "high", "findings": ["x"]}),
            ({"tags": ["a", "b"]}, {"tags": ["B", "c"], "status": "open"}),
            ("text", {"a": 1}),
        ]

        for left, right in pairs:
            assert comparator(left, right) == comparator(right, left)

    def test_identical_answers_agree(self, answer_a):
        assert AgreementComparator()(answer_a, copy.deepcopy(answer_a)) == 1.0

    def test_categorical_disagreement_zeroes(self, answer_a):
        other = dict(answer_a, risk_level="low")

        assert AgreementComparator()(answer_a, other) == 0.0

    def test_categorical_only_compared_when_shared(self):
        """risk_level present only on one side is not a compared facet."""
        comparator = AgreementComparator()

        assert comparator({"risk_level": "high", "findings": []}, {"findings": []}) == 1.0

    def test_no_comparable_facets(self):
        comparator = AgreementComparator()

        assert comparator({"summary": "ok"}, {"summary": "ok"}) == 1.0
        assert comparator({"summary": "ok"}, {"summary": "bad"}) == 0.0

    def test_list_on_one_side_only(self):
        assert AgreementComparator()({"findings": [finding("x")]}, {"summary": "ok"}) == 0.0

    def test_reasoning_steps_not_compared(self, answer_a):
        with_steps = dict(answer_a, reasoning_steps=[{"stage": "input_gathering"}])

        assert AgreementComparator()(answer_a, with_steps) == 1.0

    def test_custom_categorical_fields(self):
        comparator = AgreementComparator(categorical_fields=("verdict",))

        assert comparator({"verdict": "pass", "risk_level": "low"},
                          {"verdict": "pass", "risk_level": "high"}) == 1.0

    def test_in_range(self, answer_a, answer_b):
        assert 0.0 <= AgreementComparator()(answer_a, answer_b) <= 1.0

    def test_mixed_type_answer_keys(self):
        comparator = AgreementComparator()

        assert comparator({1: ["x"], "tags": ["a"]}, {1: ["x"], "tags": ["a"]}) == 1.0


class TestMergeAnswers:
    """Tests for the consensus merge."""

    def test_union_collapses_to_higher_severity(self, answer_a, answer_b):
        merged = merge_answers(answer_a, answer_b)
        titles = [f["title"] for f in merged["findings"]]

        assert titles == ["SQL injection", "Missing CSP header", "Outdated TLS", "Open admin port"]
        assert merged["findings"][2]["severity"] == "high"

    def test_a_scalars_win(self, answer_a, answer_b):
        merged = merge_answers(answer_a, answer_b)

        assert merged["score"] == 30
        assert merged["risk_level"] == "critical"

    def test_b_only_fields_added(self, answer_a, answer_b):
        assert merge_answers(answer_a, answer_b)["owner"] == "platform-team"

    def test_severity_tie_keeps_a(self):
        a = {"findings": [{"title": "XSS", "severity": "high", "source": "a"}]}
        b = {"findings": [{"title": "xss", "severity": "high", "source": "b"}]}

        assert merge_answers(a, b)["findings"] == [{"title": "XSS", "severity": "high", "source": "a"}]

    def test_string_lists_deduplicated(self):
        merged = merge_answers({"tags": ["Auth", "tls"]}, {"tags": ["auth ", "csp"]})

        assert merged["tags"] == ["Auth", "tls", "csp"]

    def test_b_only_list_deduplicated(self):
        assert merge_answers({}, {"tags": ["a", "A ", "b"]})["tags"] == ["a", "b"]

    def test_inputs_not_mutated(self, answer_a, answer_b):
        before_a, before_b = copy.deepcopy(answer_a), copy.deepcopy(answer_b)

        merge_answers(answer_a, answer_b)

        assert answer_a == before_a
        assert answer_b == before_b

    def test_item_keys(self):
        assert item_key({"title": " SQL  Injection"}) == item_key({"title": "sql injection"})
        assert item_key({"name": "x"}) != item_key({"title": "x"})


class TestDualPathExecution:
    """Tests for DualPathReasoner.execute_dual_path()."""

    @pytest.mark.asyncio
    async def test_below_threshold_prefers_a_on_tie(self, reasoner, scripted, answer_a, answer_b):
        """Scenario: 0.75 agreement with threshold 0.8 → not a consensus merge."""
        task = DualPathTask("scan", scripted(answer_a), scripted(answer_b))

        result = await reasoner.execute_dual_path(task)

        assert result.agreement_score == pytest.approx(0.75)
        assert result.resolution_method == ResolutionMethod.PREFER_A
        assert result.final_answer == answer_a
        assert result.result_a is not None and result.result_b is not None

    @pytest.mark.asyncio
    async def test_lower_threshold_merges(self, telemetry, scripted, answer_a, answer_b):
        """Scenario: same answers with threshold 0.7 → consensus merge."""
        reasoner = DualPathReasoner(consensus_threshold=0.7, telemetry=telemetry)
        task = DualPathTask("scan", scripted(answer_a), scripted(answer_b))

        result = await reasoner.execute_dual_path(task)

        assert result.resolution_method == ResolutionMethod.CONSENSUS_MERGE
        assert len(result.final_answer["findings"]) == 4

    @pytest.mark.asyncio
    async def test_prefers_better_validated_path(self, reasoner, scripted, answer_a, answer_b):
        """Below threshold, the higher validation score wins."""
        bad_a = dict(answer_a, score=400)
        task = DualPathTask(
            "scan",
            scripted(bad_a),
            scripted(answer_b),
            validator=numeric_range_validator("score", 0, 100),
        )

        result = await reasoner.execute_dual_path(task)

        assert result.result_a.validated is False
        assert result.resolution_method == ResolutionMethod.PREFER_B
        assert result.final_answer == answer_b

    @pytest.mark.asyncio
    async def test_one_path_fails(self, reasoner, scripted, answer_b):
        """Scenario: A raises, B succeeds → FAILED_PARTIAL with B's answer."""
        task = DualPathTask("scan", scripted(RuntimeError("model overloaded")), scripted(answer_b))

        result = await reasoner.execute_dual_path(task)

        assert result.resolution_method == ResolutionMethod.FAILED_PARTIAL
        assert result.final_answer == answer_b
        assert result.agreement_score == 0
        assert result.result_a is None
        assert result.path_errors["A"]["cause_type"] == "RuntimeError"

    @pytest.mark.asyncio
    async def test_b_fails(self, reasoner, scripted, answer_a):
        task = DualPathTask("scan", scripted(answer_a), scripted(TimeoutError()))

        result = await reasoner.execute_dual_path(task)

        assert result.resolution_method == ResolutionMethod.FAILED_PARTIAL
        assert result.final_answer == answer_a
        assert "B" in result.path_errors

    @pytest.mark.asyncio
    async def test_both_fail(self, reasoner, scripted, memory_sink):
        task = DualPathTask("scan", scripted(RuntimeError("a down")), scripted(RuntimeError("b down")))

        with pytest.raises(GenerationFailure) as exc_info:
            await reasoner.execute_dual_path(task)

        err = exc_info.value
        assert err.task_name == "scan"
        assert [f.task_name for f in err.failures] == ["scan[A]", "scan[B]"]
        assert err.__cause__ is err.failures[0]
        assert memory_sink.get_events(METRIC_RESOLUTION) == []

    @pytest.mark.asyncio
    async def test_both_paths_settle_before_resolution(self, reasoner, scripted, answer_b):
        """A fast failure does not cut the slower path short."""
        slow_b = scripted(answer_b, delay=0.05)
        task = DualPathTask("scan", scripted(RuntimeError("fast fail")), slow_b)

        result = await reasoner.execute_dual_path(task)

        assert slow_b.call_count == 1
        assert result.final_answer == answer_b

    @pytest.mark.asyncio
    async def test_paths_run_concurrently(self, reasoner):
        """Each path waits for the other to start; sequential execution would hang."""
        started_a, started_b = asyncio.Event(), asyncio.Event()

        async def path_a(context):
            started_a.set()
            await started_b.wait()
            return {"status": "ok"}

        async def path_b(context):
            started_b.set()
            await started_a.wait()
            return {"status": "ok"}

        result = await asyncio.wait_for(
            reasoner.execute_dual_path(DualPathTask("sync", path_a, path_b)),
            timeout=2,
        )

        assert result.resolution_method == ResolutionMethod.CONSENSUS_MERGE

    @pytest.mark.asyncio
    async def test_contexts_isolated(self, reasoner):
        context = {"services": ["api", "db"]}
        seen = {}

        async def path_a(ctx):
            ctx["services"].append("injected")
            seen["a"] = ctx
            return {}

        async def path_b(ctx):
            await asyncio.sleep(0)
            seen["b"] = ctx
            return {}

        task = DualPathTask("iso", path_a, path_b, context=context,
                            perspective_a="attacker", perspective_b="auditor")
        await reasoner.execute_dual_path(task)

        assert context == {"services": ["api", "db"]}
        assert seen["b"]["services"] == ["api", "db"]
        assert seen["a"]["perspective"] == "attacker"
        assert seen["b"]["perspective"] == "auditor"

    @pytest.mark.asyncio
    async def test_schema_misuse_before_either_path(self, reasoner, scripted):
        gen_a, gen_b = scripted({}), scripted({})
        schema = ValidationSchema(field_types={"x": "list"})

        with pytest.raises(SchemaMisuse):
            await reasoner.execute_dual_path(DualPathTask("scan", gen_a, gen_b, output_schema=schema))

        assert gen_a.call_count == 0 and gen_b.call_count == 0

    @pytest.mark.asyncio
    async def test_authorizer_checked_once(self, reasoner, scripted):
        asked = []

        def deny(name):
            asked.append(name)
            return False

        with pytest.raises(AuthorizationDenied):
            await reasoner.execute_dual_path(
                DualPathTask("scan", scripted({}), scripted({}), authorizer=deny)
            )

        assert asked == ["scan"]

    @pytest.mark.asyncio
    async def test_resolution_metric(self, reasoner, scripted, memory_sink, answer_a, answer_b):
        task = DualPathTask("scan", scripted(answer_a), scripted(answer_b), correlation_id="req_9_xyz")

        result = await reasoner.execute_dual_path(task)

        events = memory_sink.get_events(METRIC_RESOLUTION)
        assert len(events) == 1
        assert events[0].tags["resolution_method"] == "prefer_a"
        assert events[0].correlation_id == "req_9_xyz"
        assert len(memory_sink.get_events("reasoning_execution")) == 2
        assert result.result_a.correlation_id == "req_9_xyz"

    @pytest.mark.asyncio
    async def test_custom_comparator(self, telemetry, scripted):
        reasoner = DualPathReasoner(comparator=lambda a, b: 0.95, telemetry=telemetry)

        result = await reasoner.execute_dual_path(
            DualPathTask("scan", scripted({"tags": ["a"]}), scripted({"tags": ["b"]}))
        )

        assert result.resolution_method == ResolutionMethod.CONSENSUS_MERGE
        assert result.final_answer == {"tags": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_nan_comparator_means_no_agreement(self, telemetry, scripted, answer_a):
        reasoner = DualPathReasoner(comparator=lambda a, b: float("nan"), telemetry=telemetry)

        result = await reasoner.execute_dual_path(
            DualPathTask("scan", scripted(answer_a), scripted(answer_a))
        )

        assert result.agreement_score == 0.0
        assert result.resolution_method == ResolutionMethod.PREFER_A

    @pytest.mark.asyncio
    async def test_mixed_type_context_keys(self, reasoner, scripted, answer_a):
        """Both paths run with a context whose keys are not mutually orderable."""
        task = DualPathTask("scan", scripted(answer_a), scripted(answer_a), context={1: "a", "b": 2})

        result = await reasoner.execute_dual_path(task)

        assert result.resolution_method == ResolutionMethod.CONSENSUS_MERGE

    @pytest.mark.asyncio
    async def test_serialized_quality_block(self, telemetry, scripted, answer_a):
        result = await execute_dual_path(
            DualPathTask("scan", scripted(answer_a), scripted(answer_a)),
            telemetry=telemetry,
        )
        d = result.to_dict()

        assert d["reasoning_quality"] == {"agreement_score": 1.0, "resolution_method": "consensus_merge"}
