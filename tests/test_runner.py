"""
Tests for the test case runner.

The prepared submission is replaced by a small fake so that ordering, limit
resolution and the submission time budget can be checked without sandboxes.
"""

import threading
import time
from dataclasses import replace

import pytest

from conftest import PERMISSIVE_POLICY
from coderunner.governor import ResourceLimits
from coderunner.models import CaseStatus, ExecutionResult, SubmissionStatus
from coderunner.runner import TestCaseRunner, exact_match


class FakePrepared:
    """Answers each input from a table, optionally sleeping first."""

    def __init__(self, answers, delays=None):
        self.answers = answers
        self.delays = delays or {}
        self.calls = []
        self._lock = threading.Lock()

    def run(self, stdin, limits):
        with self._lock:
            self.calls.append((stdin, limits))
        time.sleep(self.delays.get(stdin, 0))
        answer = self.answers[stdin]
        if isinstance(answer, ExecutionResult):
            return answer
        return ExecutionResult(status=SubmissionStatus.COMPLETED, output=answer, execution_time_ms=1.0)


class TestExactMatch:
    """Test the output comparison rule."""

    @pytest.mark.parametrize("actual,expected", [
        ("3", "3"),
        ("3\n", "3"),
        ("3  \n\n", "3\n"),
        ("a\nb\n", "a\nb"),
    ])
    def test_trailing_whitespace_ignored(self, actual, expected):
        assert exact_match(actual, expected)

    @pytest.mark.parametrize("actual,expected", [
        (" 3", "3"),
        ("a  b", "a b"),
        ("a\n\nb", "a\nb"),
        ("3.0", "3"),
        ("", "0"),
    ])
    def test_everything_else_is_significant(self, actual, expected):
        assert not exact_match(actual, expected)


class TestRunCase:
    """Test classification of single cases."""

    def test_pass_and_fail(self, config, make_challenge):
        challenge = make_challenge()
        runner = TestCaseRunner(config)
        prepared = FakePrepared({"1 2": "3\n", "5 5": "11\n"})

        passed = runner.run_case(prepared, challenge, challenge.test_cases[0], PERMISSIVE_POLICY)
        failed = runner.run_case(prepared, challenge, challenge.test_cases[1], PERMISSIVE_POLICY)

        assert passed.passed and passed.status == CaseStatus.PASSED
        assert not failed.passed and failed.status == CaseStatus.FAILED
        assert failed.output == "11\n"
        assert failed.expected_output == "10"

    def test_limits_are_minimum_of_challenge_case_and_policy(self, config, make_challenge):
        challenge = make_challenge(time_limit_ms=2000, memory_limit_mb=100)
        case = replace(challenge.test_cases[0], time_limit_ms=500)
        prepared = FakePrepared({"1 2": "3"})

        TestCaseRunner(config).run_case(prepared, challenge, case, PERMISSIVE_POLICY)

        assert prepared.calls[0][1] == ResourceLimits(500, 100)

    @pytest.mark.parametrize("status,case_status,event", [
        (SubmissionStatus.TIMEOUT, CaseStatus.TIMEOUT, "CASE_TIMEOUT"),
        (SubmissionStatus.MEMORY_LIMIT_EXCEEDED, CaseStatus.MEMORY_LIMIT_EXCEEDED, "CASE_MEMORY_EXCEEDED"),
        (SubmissionStatus.RUNTIME_ERROR, CaseStatus.RUNTIME_ERROR, None),
    ])
    def test_abnormal_outcomes(self, config, make_challenge, status, case_status, event):
        events = []
        challenge = make_challenge()
        runner = TestCaseRunner(config, lambda e, d: events.append(e))
        prepared = FakePrepared({"1 2": ExecutionResult(status=status, output="3", error="x")})

        result = runner.run_case(prepared, challenge, challenge.test_cases[0], PERMISSIVE_POLICY)

        assert result.status == case_status
        assert not result.passed
        assert events == ([event] if event else [])


class TestRunAll:
    """Test ordering and the submission time budget."""

    def test_sequential_order(self, config, make_challenge):
        challenge = make_challenge()
        prepared = FakePrepared({"1 2": "3", "5 5": "10", "0 0": "0"})

        results = TestCaseRunner(config).run_all(prepared, challenge, PERMISSIVE_POLICY)

        assert [r.test_case_id for r in results] == ["1", "2", "3"]
        assert [stdin for stdin, _ in prepared.calls] == ["1 2", "5 5", "0 0"]
        assert all(r.passed for r in results)
        assert results[2].hidden

    def test_failure_does_not_stop_run(self, config, make_challenge):
        challenge = make_challenge()
        prepared = FakePrepared({
            "1 2": "3",
            "5 5": ExecutionResult(status=SubmissionStatus.TIMEOUT, error="slow"),
            "0 0": "0",
        })

        results = TestCaseRunner(config).run_all(prepared, challenge, PERMISSIVE_POLICY)

        assert [r.status for r in results] == [CaseStatus.PASSED, CaseStatus.TIMEOUT, CaseStatus.PASSED]

    def test_parallel_results_keep_authored_order(self, config, make_challenge):
        config = replace(config, case_parallelism=3)
        challenge = make_challenge()
        # The first case finishes last.
        prepared = FakePrepared(
            {"1 2": "3", "5 5": "10", "0 0": "0"},
            delays={"1 2": 0.2, "5 5": 0.1},
        )

        results = TestCaseRunner(config).run_all(prepared, challenge, PERMISSIVE_POLICY)

        assert [r.test_case_id for r in results] == ["1", "2", "3"]

    def test_budget_exhaustion_marks_not_run(self, config, make_challenge):
        events = []
        config = replace(config, submission_time_budget_ms=100)
        challenge = make_challenge()
        prepared = FakePrepared({"1 2": "3", "5 5": "10", "0 0": "0"}, delays={"1 2": 0.2})

        results = TestCaseRunner(config, lambda e, d: events.append(e)).run_all(
            prepared, challenge, PERMISSIVE_POLICY
        )

        assert results[0].status == CaseStatus.PASSED
        assert [r.status for r in results[1:]] == [CaseStatus.NOT_RUN, CaseStatus.NOT_RUN]
        assert len(prepared.calls) == 1
        assert events == ["SUBMISSION_BUDGET_EXHAUSTED"]
