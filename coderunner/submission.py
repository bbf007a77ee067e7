"""
Submission record and its lifecycle state machine.

PENDING -> RUNNING -> exactly one terminal state. Once terminal, a Submission
is frozen: every attribute assignment raises SubmissionStateError. A new
grading attempt always creates a new Submission.
"""

import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, Optional, Sequence, Tuple

from .errors import ErrorCode, SubmissionStateError
from .models import (
    Language,
    SubmissionStatus,
    TERMINAL_STATUSES,
    TestCaseResult,
)

_TRANSITIONS = {
    SubmissionStatus.PENDING: frozenset({SubmissionStatus.RUNNING}),
    SubmissionStatus.RUNNING: TERMINAL_STATUSES,
}


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Submission:
    """One grading attempt of one user's code against one challenge."""
    user_id: str
    challenge_id: str
    language: Language
    code: str
    id: str = field(default_factory=_new_id)
    status: SubmissionStatus = SubmissionStatus.PENDING
    results: Tuple[TestCaseResult, ...] = ()
    execution_time_ms: Optional[float] = None
    max_memory_mb: Optional[float] = None
    score: Optional[int] = None
    feedback: Optional[str] = None
    error_code: Optional[str] = None
    xp_earned: int = 0
    coins_earned: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    is_automated: bool = False

    def __post_init__(self):
        # Any status may be given at construction (records loaded from storage);
        # the freeze applies from here on.
        object.__setattr__(self, '_initialized', True)

    def __setattr__(self, name, value):
        if self.__dict__.get('_initialized') and self.status in TERMINAL_STATUSES:
            raise SubmissionStateError(
                f"Submission {self.id} is {self.status.value} and can no longer change"
            )
        super().__setattr__(name, value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def success(self) -> bool:
        return self.status == SubmissionStatus.COMPLETED

    def _transition(self, new_status: SubmissionStatus):
        if new_status not in _TRANSITIONS.get(self.status, frozenset()):
            raise SubmissionStateError(
                f"Illegal transition {self.status.value} -> {new_status.value} "
                f"for submission {self.id}"
            )

    def start(self):
        """PENDING -> RUNNING."""
        self._transition(SubmissionStatus.RUNNING)
        self.status = SubmissionStatus.RUNNING

    def finalize(
        self,
        status: SubmissionStatus,
        results: Sequence[TestCaseResult] = (),
        score: Optional[int] = None,
        feedback: Optional[str] = None,
        error_code: Optional[str] = None,
        execution_time_ms: Optional[float] = None,
        max_memory_mb: Optional[float] = None,
        xp_earned: int = 0,
        coins_earned: int = 0
    ):
        """
        RUNNING -> terminal. All outcome fields are written before the status,
        which is what freezes the record.

        Compilation and system errors never carry results or a score.
        """
        self._transition(status)
        if status in (SubmissionStatus.COMPILATION_ERROR, SubmissionStatus.SYSTEM_ERROR):
            results, score = (), None

        self.results = tuple(results)
        self.score = score
        self.feedback = feedback
        self.error_code = error_code
        self.execution_time_ms = execution_time_ms
        self.max_memory_mb = max_memory_mb
        self.xp_earned = xp_earned
        self.coins_earned = coins_earned
        self.status = status

    # ===== TERMINAL SHORTCUTS =====

    def reject_security(self, reason: str):
        """Static scan hit: FAILED without running anything."""
        self.finalize(
            SubmissionStatus.FAILED,
            feedback=f"Security violation: {reason}",
            error_code=ErrorCode.SECURITY_VIOLATION.value,
        )

    def reject_compilation(self, output: str):
        self.finalize(
            SubmissionStatus.COMPILATION_ERROR,
            feedback=f"Compilation failed:\n{output}" if output else "Compilation failed",
        )

    def fail_system(self, message: str, error_code: Optional[str] = None):
        self.finalize(
            SubmissionStatus.SYSTEM_ERROR,
            feedback=f"System error: {message}. Please try again.",
            error_code=error_code or ErrorCode.SANDBOX_ERROR.value,
        )

    @contextmanager
    def guarded(self) -> Iterator['Submission']:
        """
        Ensure the submission ends terminal. An exception escaping the block
        while the submission is still open finalizes it as SYSTEM_ERROR and
        is then re-raised.
        """
        try:
            yield self
        except BaseException as e:
            if not self.is_terminal:
                if self.status == SubmissionStatus.PENDING:
                    self.start()
                self.fail_system(f"unexpected {type(e).__name__}")
            raise

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "challenge_id": self.challenge_id,
            "language": self.language.value,
            "status": self.status.value,
            "score": self.score,
            "feedback": self.feedback,
            "error_code": self.error_code,
            "execution_time_ms": self.execution_time_ms,
            "max_memory_mb": self.max_memory_mb,
            "xp_earned": self.xp_earned,
            "coins_earned": self.coins_earned,
            "created_at": self.created_at.isoformat(),
            "is_automated": self.is_automated,
        }
