"""
Test case runner.

Executes a prepared submission against every test case of a challenge in
authored order and compares outputs. A failing case never stops the run; only
the submission-level time budget does, in which case the cases that were not
started are reported as NOT_RUN.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

from .governor import Deadline, resolve_limits
from .models import (
    CaseStatus,
    Challenge,
    EngineConfig,
    ExecutionResult,
    SubmissionStatus,
    TestCase,
    TestCaseResult,
)
from .registry import SecurityPolicy
from .sandbox import PreparedCode

_CASE_STATUS = {
    SubmissionStatus.TIMEOUT: CaseStatus.TIMEOUT,
    SubmissionStatus.MEMORY_LIMIT_EXCEEDED: CaseStatus.MEMORY_LIMIT_EXCEEDED,
    SubmissionStatus.RUNTIME_ERROR: CaseStatus.RUNTIME_ERROR,
}


def exact_match(actual: str, expected: str) -> bool:
    """
    The only comparison rule: equality after stripping trailing whitespace.

    Leading whitespace and interior whitespace are significant.
    """
    return str(actual).rstrip() == str(expected).rstrip()


class TestCaseRunner:
    """Runs all test cases of a challenge against one prepared submission."""

    __test__ = False

    def __init__(self, config: EngineConfig, event_logger: Optional[Callable[[str, str], None]] = None):
        self.config = config
        self.event_logger = event_logger

    def _log(self, event: str, details: str = ""):
        if self.event_logger:
            self.event_logger(event, details)

    def run_case(
        self,
        prepared: PreparedCode,
        challenge: Challenge,
        test_case: TestCase,
        policy: SecurityPolicy
    ) -> TestCaseResult:
        """Run a single test case and classify its outcome."""
        limits = resolve_limits(
            policy,
            time_limits_ms=(challenge.time_limit_ms, test_case.time_limit_ms),
            memory_limits_mb=(challenge.memory_limit_mb, test_case.memory_limit_mb),
        )
        result = prepared.run(test_case.input, limits)
        return self._to_case_result(challenge, test_case, result)

    def _to_case_result(self, challenge: Challenge, test_case: TestCase,
                        result: ExecutionResult) -> TestCaseResult:
        if result.status == SubmissionStatus.COMPLETED:
            passed = exact_match(result.output, test_case.expected_output)
            status = CaseStatus.PASSED if passed else CaseStatus.FAILED
        else:
            passed = False
            status = _CASE_STATUS.get(result.status, CaseStatus.SYSTEM_ERROR)
            if status == CaseStatus.TIMEOUT:
                self._log("CASE_TIMEOUT", f"{challenge.id}/{test_case.id}: {result.error}")
            elif status == CaseStatus.MEMORY_LIMIT_EXCEEDED:
                self._log("CASE_MEMORY_EXCEEDED", f"{challenge.id}/{test_case.id}: {result.error}")

        return TestCaseResult(
            test_case_id=test_case.id,
            passed=passed,
            status=status,
            hidden=test_case.hidden,
            output=result.output,
            expected_output=test_case.expected_output,
            error=result.error,
            execution_time_ms=result.execution_time_ms,
            memory_usage_mb=result.memory_usage_mb,
        )

    def run_all(
        self,
        prepared: PreparedCode,
        challenge: Challenge,
        policy: SecurityPolicy
    ) -> List[TestCaseResult]:
        """
        Run every test case, returning results in the challenge's order.

        Args:
            prepared: Built submission from Sandbox.prepared()
            challenge: Challenge whose test cases are run
            policy: Security policy of the submission's language (limit ceilings)

        Returns:
            One TestCaseResult per test case, same order as challenge.test_cases
        """
        budget = Deadline(self.config.submission_time_budget_ms / 1000.0)

        def attempt(test_case: TestCase) -> TestCaseResult:
            if budget.expired():
                return TestCaseResult.not_run(test_case)
            return self.run_case(prepared, challenge, test_case, policy)

        if self.config.case_parallelism <= 1:
            results = [attempt(test_case) for test_case in challenge.test_cases]
        else:
            with ThreadPoolExecutor(max_workers=self.config.case_parallelism) as pool:
                futures = [pool.submit(attempt, test_case) for test_case in challenge.test_cases]
                results = [future.result() for future in futures]

        skipped = sum(1 for r in results if r.status == CaseStatus.NOT_RUN)
        if skipped:
            self._log("SUBMISSION_BUDGET_EXHAUSTED",
                      f"{challenge.id}: {skipped} test case(s) not run")
        return results
