"""
Tests for conditional execution: condition evaluation, if/else blocks and
step skipping.
"""

import pytest

from stepflow.engine import TestEngine
from stepflow.exceptions import EvaluationError
from stepflow.models import ConditionalBlock, Step, StepStatus
from stepflow.workflow.conditions import ConditionEvaluator
from stepflow.workflow.skip import NO_REASON, evaluate_skip


class TestConditionEvaluator:
    """Test the condition evaluator."""

    def setup_method(self):
        self.evaluator = ConditionEvaluator()

    @pytest.mark.parametrize("condition,expected", [
        ("200 == 200", True),
        ("200 != 200", False),
        ("10 > 9", True),
        ("10 >= 10", True),
        ("2 < 10", True),
        ("abc < abd", True),
        ("'hello world' contains world", True),
        ("hello starts_with he", True),
        ("hello ends_with lo", True),
        ('"a b" == "a b"', True),
        ("true", True),
        ("off", False),
        ("YES", True),
        ("!false", True),
        ("1 == 1 && 2 == 3", False),
        ("1 == 2 || 2 == 2", True),
        ("1 == 2 || 2 == 2 && 3 == 4", False),
    ])
    def test_evaluate(self, condition, expected):
        assert self.evaluator.evaluate(condition) is expected

    def test_numeric_comparison_not_lexicographic(self):
        assert self.evaluator.evaluate("10 > 9")
        assert not self.evaluator.evaluate("10 < 9")

    @pytest.mark.parametrize("condition", ["", "maybe", "a == b == c"])
    def test_invalid_conditions(self, condition):
        with pytest.raises(EvaluationError):
            self.evaluator.evaluate(condition)

    @pytest.mark.parametrize("spec,count", [
        ("3", 3),
        ("0", 0),
        ("1..5", 5),
        ("2..2", 1),
        ("[a, b, c]", 3),
        ("[]", 0),
    ])
    def test_count_iterations(self, spec, count):
        assert self.evaluator.count_iterations(spec) == count

    @pytest.mark.parametrize("spec", ["-1", "5..1", "x..y", "lots"])
    def test_invalid_iteration_specs(self, spec):
        with pytest.raises(EvaluationError):
            self.evaluator.count_iterations(spec)


class TestSkipEvaluation:

    def test_bool_and_none(self):
        identity = lambda text: text
        assert evaluate_skip(None, identity) == (False, "")
        assert evaluate_skip(False, identity) == (False, "")
        assert evaluate_skip(True, identity) == (True, NO_REASON)

    @pytest.mark.parametrize("value,expected", [
        ("not ready yet", (True, "not ready yet")),
        ("false", (False, "")),
        ("FALSE", (False, "")),
        ("0", (False, "")),
        ("   ", (False, "")),
    ])
    def test_strings(self, value, expected):
        assert evaluate_skip(value, lambda text: text) == expected

    def test_substituted_before_evaluation(self):
        engine = TestEngine()
        assert engine.should_skip("${flag}", {"flag": "false"}) == (False, "")
        assert engine.should_skip("${flag}", {"flag": "flaky on CI"}) == (True, "flaky on CI")

    def test_skipped_step_never_calls_action(self):
        calls = []
        engine = TestEngine()
        engine.action_executor.register("track", lambda token, args, options, silent: calls.append(args))

        results = engine.execute_steps([
            Step(name="skipped", action="track", skip="disabled"),
            Step(name="runs", action="track", args=["x"]),
        ])

        assert calls == [["x"]]
        assert results[0].status == StepStatus.SKIPPED
        assert results[0].error == "disabled"
        assert results[1].status == StepStatus.PASSED

    def test_skipped_step_does_not_bind_result(self):
        calls = []
        engine = TestEngine()
        engine.action_executor.register("track", lambda token, args, options, silent: calls.append(args) or "new")

        results = engine.execute_steps([
            Step(name="rebind", action="track", skip="off for now", result="x"),
            Step(name="bind", action="track", skip="off for now", result="fresh"),
            Step(name="read", action="echo", args=["${x}|${fresh}"]),
        ], variables={"x": "original"})

        assert calls == []
        assert [r.status for r in results] == [StepStatus.SKIPPED, StepStatus.SKIPPED, StepStatus.PASSED]
        assert results[0].output == ""
        assert results[2].output == "original|${fresh}"


class TestIfBlocks:
    """if/else execution through the engine."""

    def setup_method(self):
        self.engine = TestEngine()

    def _if_step(self, condition, **kwargs):
        return Step(name="branch", if_block=ConditionalBlock(
            condition=condition,
            then=[Step(name="then step", action="echo", args=["then"])],
            else_=[Step(name="else step", action="echo", args=["else"])],
        ), **kwargs)

    def test_then_branch(self):
        results = self.engine.execute_steps([self._if_step("${code} == 200")], variables={"code": 200})
        assert [r.step.name for r in results] == ["then step", "branch"]
        assert results[-1].status == StepStatus.PASSED
        assert results[-1].output == "condition true, ran then branch"

    def test_else_branch(self):
        results = self.engine.execute_steps([self._if_step("${code} == 200")], variables={"code": 500})
        assert [r.step.name for r in results] == ["else step", "branch"]
        assert results[-1].output == "condition false, ran else branch"

    def test_empty_else_passes(self):
        step = Step(name="only then", if_block=ConditionalBlock(condition="false", then=[
            Step(name="never", action="fail"),
        ]))
        results = self.engine.execute_steps([step])
        assert len(results) == 1
        assert results[0].status == StepStatus.PASSED

    def test_invalid_condition_fails_block(self):
        results = self.engine.execute_steps([self._if_step("not a condition")])
        assert results[0].status == StepStatus.FAILED
        assert "failed to evaluate if condition" in results[0].error

    def test_failing_branch_fails_block(self):
        step = Step(name="guard", if_block=ConditionalBlock(condition="true", then=[
            Step(name="boom", action="fail", args=["nope"]),
            Step(name="after", action="echo", args=["unreachable"]),
        ]))
        results = self.engine.execute_steps([step])
        assert [r.step.name for r in results] == ["boom", "guard"]
        assert results[-1].status == StepStatus.FAILED
        assert results[-1].error == "then branch failed: nope"

    def test_continue_on_failure_inside_branch(self):
        step = Step(name="guard", if_block=ConditionalBlock(condition="true", then=[
            Step(name="soft", action="fail", continue_on_failure=True),
            Step(name="after", action="echo", args=["ran"]),
        ]))
        results = self.engine.execute_steps([step])
        assert [r.status for r in results] == [StepStatus.FAILED, StepStatus.PASSED, StepStatus.PASSED]

    def test_nested_if(self):
        inner = Step(name="inner", if_block=ConditionalBlock(condition="1 < 2", then=[
            Step(name="deep", action="echo", args=["deep"], result="depth"),
        ]))
        outer = Step(name="outer", if_block=ConditionalBlock(condition="true", then=[inner]))
        results = self.engine.execute_steps([outer, Step(name="read", action="echo", args=["${depth}"])])
        assert [r.step.name for r in results] == ["deep", "inner", "outer", "read"]
        assert results[-1].output == "deep"

    def test_skipped_if_does_not_evaluate_condition(self):
        results = self.engine.execute_steps([self._if_step("garbage", skip=True)])
        assert len(results) == 1
        assert results[0].status == StepStatus.SKIPPED
