"""
Grader module for scoring test results and computing rewards.

Turns an ordered list of TestCaseResult into a score, a terminal status and a
feedback message, and computes the XP/coin rewards for a new best score.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .errors import ErrorCode
from .models import CaseStatus, Challenge, SubmissionStatus, TestCaseResult


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero (2.5 -> 3)."""
    return int(math.floor(value + 0.5))


@dataclass
class GradeReport:
    """Aggregate verdict over all test case results."""
    status: SubmissionStatus
    score: int
    success: bool
    passed: int
    considered: int
    total: int
    not_run: int
    feedback: str
    error_code: Optional[str]
    execution_time_ms: float
    max_memory_mb: Optional[float]


class Grader:
    """Scores test results and computes rewards."""

    # ===== SCORING =====

    def score(self, results: Sequence[TestCaseResult]) -> int:
        """
        Percentage of considered test cases that passed, rounded half up.

        Cases that were not run are excluded from the denominator. With
        nothing considered the score is 0.
        """
        considered = [r for r in results if r.status != CaseStatus.NOT_RUN]
        if not considered:
            return 0
        passed = sum(1 for r in considered if r.passed)
        return round_half_up(100 * passed / len(considered))

    def status(self, results: Sequence[TestCaseResult]) -> SubmissionStatus:
        """
        Terminal status for a graded run.

        All passed -> COMPLETED. Otherwise the most severe problem wins:
        TIMEOUT (including an exhausted submission budget), then
        MEMORY_LIMIT_EXCEEDED, then RUNTIME_ERROR, then FAILED.
        """
        statuses = {r.status for r in results}
        if results and statuses == {CaseStatus.PASSED}:
            return SubmissionStatus.COMPLETED
        if CaseStatus.TIMEOUT in statuses or CaseStatus.NOT_RUN in statuses:
            return SubmissionStatus.TIMEOUT
        if CaseStatus.MEMORY_LIMIT_EXCEEDED in statuses:
            return SubmissionStatus.MEMORY_LIMIT_EXCEEDED
        if CaseStatus.RUNTIME_ERROR in statuses:
            return SubmissionStatus.RUNTIME_ERROR
        return SubmissionStatus.FAILED

    def feedback(self, passed: int, total: int, not_run: int) -> str:
        if total and passed == total:
            return "Great job! All tests passed!"
        message = f"You've passed {passed} out of {total} tests. Keep trying!"
        if not_run:
            message += (f" {not_run} test(s) were not run because the submission "
                        f"time budget was exhausted.")
        return message

    def grade(self, results: Sequence[TestCaseResult]) -> GradeReport:
        """Aggregate ordered test case results into a GradeReport."""
        total = len(results)
        passed = sum(1 for r in results if r.passed)
        not_run = sum(1 for r in results if r.status == CaseStatus.NOT_RUN)
        status = self.status(results)

        error_code = None
        if status == SubmissionStatus.TIMEOUT:
            error_code = ErrorCode.EXECUTION_TIMEOUT.value
        elif status == SubmissionStatus.MEMORY_LIMIT_EXCEEDED:
            error_code = ErrorCode.MEMORY_LIMIT_EXCEEDED.value

        memories: List[float] = [r.memory_usage_mb for r in results if r.memory_usage_mb is not None]
        return GradeReport(
            status=status,
            score=self.score(results),
            success=status == SubmissionStatus.COMPLETED,
            passed=passed,
            considered=total - not_run,
            total=total,
            not_run=not_run,
            feedback=self.feedback(passed, total, not_run),
            error_code=error_code,
            execution_time_ms=round(sum(r.execution_time_ms or 0.0 for r in results), 2),
            max_memory_mb=max(memories) if memories else None,
        )

    # ===== REWARDS =====

    def rewards(self, challenge: Challenge, score: int, previous_best: Optional[int]) -> Tuple[int, int]:
        """
        XP and coins for a score, granted only for a strict improvement.

        Args:
            challenge: Challenge carrying xp_reward and coin_reward
            score: Score of this submission (0-100)
            previous_best: User's best earlier score on the challenge, None if none

        Returns:
            Tuple of (xp, coins); (0, 0) unless score > previous best
        """
        if score <= (previous_best or 0):
            return 0, 0
        xp = round_half_up(challenge.xp_reward * score / 100)
        coins = round_half_up(challenge.coin_reward * score / 100)
        return xp, coins
