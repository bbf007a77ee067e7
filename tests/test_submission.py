"""
Tests for the submission state machine.
"""

from dataclasses import replace

import pytest

from coderunner.errors import SubmissionStateError
from coderunner.models import CaseStatus, Language, SubmissionStatus, TestCaseResult
from coderunner.submission import Submission


@pytest.fixture
def submission():
    return Submission(user_id="u1", challenge_id="sum", language=Language.PYTHON, code="print(1)")


RESULT = TestCaseResult(test_case_id="1", passed=True, status=CaseStatus.PASSED, hidden=False)


class TestLifecycle:
    """Test legal and illegal transitions."""

    def test_new_submission_is_pending(self, submission):
        assert submission.status == SubmissionStatus.PENDING
        assert not submission.is_terminal
        assert len(submission.id) == 32

    def test_ids_are_unique(self):
        a = Submission("u", "c", Language.PYTHON, "")
        b = Submission("u", "c", Language.PYTHON, "")
        assert a.id != b.id

    def test_start_then_finalize(self, submission):
        submission.start()
        assert submission.status == SubmissionStatus.RUNNING
        submission.finalize(SubmissionStatus.COMPLETED, results=[RESULT], score=100,
                            feedback="ok", xp_earned=10, coins_earned=5)
        assert submission.is_terminal
        assert submission.success
        assert submission.results == (RESULT,)
        assert submission.xp_earned == 10

    def test_cannot_finalize_from_pending(self, submission):
        with pytest.raises(SubmissionStateError):
            submission.finalize(SubmissionStatus.COMPLETED)

    def test_cannot_start_twice(self, submission):
        submission.start()
        with pytest.raises(SubmissionStateError):
            submission.start()

    def test_running_is_not_a_terminal_target(self, submission):
        submission.start()
        with pytest.raises(SubmissionStateError):
            submission.finalize(SubmissionStatus.PENDING)

    def test_terminal_submission_is_frozen(self, submission):
        submission.start()
        submission.finalize(SubmissionStatus.FAILED, score=33)
        with pytest.raises(SubmissionStateError):
            submission.score = 100
        with pytest.raises(SubmissionStateError):
            submission.status = SubmissionStatus.COMPLETED
        with pytest.raises(SubmissionStateError):
            submission.finalize(SubmissionStatus.COMPLETED)
        assert submission.score == 33

    def test_constructed_in_terminal_state(self):
        """A record rebuilt from storage may already be terminal; it is frozen once built."""
        stored = Submission("u1", "sum", Language.PYTHON, "print(1)", id="abc",
                            status=SubmissionStatus.COMPLETED, results=(RESULT,), score=100)
        assert stored.success
        assert stored.to_dict()["status"] == "completed"
        assert "_initialized" not in stored.to_dict()
        with pytest.raises(SubmissionStateError, match="abc is completed"):
            stored.score = 0
        assert stored.score == 100

    def test_replace_keeps_terminal_record_frozen(self, submission):
        submission.start()
        submission.finalize(SubmissionStatus.TIMEOUT, score=50)
        copy = replace(submission, id="copy")
        assert copy.status == SubmissionStatus.TIMEOUT
        with pytest.raises(SubmissionStateError):
            copy.feedback = "changed"


class TestTerminalShortcuts:
    """Test the helpers for non-graded terminal states."""

    def test_security_rejection(self, submission):
        submission.start()
        submission.reject_security("Banned module used: os")
        assert submission.status == SubmissionStatus.FAILED
        assert submission.feedback == "Security violation: Banned module used: os"
        assert submission.error_code == "SECURITY_VIOLATION"
        assert submission.results == ()

    def test_compilation_error_has_no_results_or_score(self, submission):
        submission.start()
        submission.finalize(SubmissionStatus.COMPILATION_ERROR, results=[RESULT], score=50)
        assert submission.results == ()
        assert submission.score is None

    def test_reject_compilation(self, submission):
        submission.start()
        submission.reject_compilation("main.cpp:1: error")
        assert submission.status == SubmissionStatus.COMPILATION_ERROR
        assert submission.feedback == "Compilation failed:\nmain.cpp:1: error"

    def test_system_failure(self, submission):
        submission.start()
        submission.fail_system("sandbox unavailable", "SERVICE_UNAVAILABLE")
        assert submission.status == SubmissionStatus.SYSTEM_ERROR
        assert submission.feedback == "System error: sandbox unavailable. Please try again."
        assert submission.error_code == "SERVICE_UNAVAILABLE"
        assert submission.score is None

    def test_system_failure_default_code(self, submission):
        submission.start()
        submission.fail_system("boom")
        assert submission.error_code == "SANDBOX_ERROR"


class TestGuarded:
    """Test that every path ends terminal."""

    def test_exception_while_running(self, submission):
        with pytest.raises(RuntimeError):
            with submission.guarded():
                submission.start()
                raise RuntimeError("bug")
        assert submission.status == SubmissionStatus.SYSTEM_ERROR
        assert submission.feedback == "System error: unexpected RuntimeError. Please try again."

    def test_exception_while_pending(self, submission):
        with pytest.raises(KeyError):
            with submission.guarded():
                raise KeyError("x")
        assert submission.status == SubmissionStatus.SYSTEM_ERROR

    def test_exception_after_terminal_leaves_state(self, submission):
        with pytest.raises(ValueError):
            with submission.guarded():
                submission.start()
                submission.finalize(SubmissionStatus.COMPLETED, score=100)
                raise ValueError("late")
        assert submission.status == SubmissionStatus.COMPLETED

    def test_clean_exit(self, submission):
        with submission.guarded():
            submission.start()
            submission.finalize(SubmissionStatus.FAILED, score=0)
        assert submission.status == SubmissionStatus.FAILED


class TestSerialization:
    def test_to_dict(self, submission):
        data = submission.to_dict()
        assert data["status"] == "pending"
        assert data["language"] == "python"
        assert data["user_id"] == "u1"
        assert "code" not in data
