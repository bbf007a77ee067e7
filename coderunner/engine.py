"""
Grading engine: intake, orchestration and response assembly.

Flow of a graded submission:
  validate -> Submission(PENDING) -> RUNNING -> static security scan ->
  build once (compile if needed) -> run every test case under the governor ->
  grade -> exactly one terminal state -> rewards, progress and notifications.

Validation failures raise ValidationError before any Submission exists.
Everything after that ends in a terminal Submission, including unexpected
exceptions (SYSTEM_ERROR, then re-raised).
"""

import atexit
from typing import Any, Callable, Dict, List, Mapping, Optional

from .catalogue import public_challenge_view
from .errors import CompilationError, ErrorCode, SandboxError, ValidationError
from .event_log import EventLog
from .governor import ResourceGovernor, resolve_limits
from .grader import Grader
from .models import (
    Challenge,
    EngineConfig,
    EvaluationResponse,
    ExecuteRequest,
    ExecuteResponse,
    Language,
    SubmissionStatus,
    SubmitRequest,
    public_result,
)
from .registry import LanguageRuntimeConfig, RUNTIMES, SECURITY_POLICIES, SecurityPolicy, resolve_language
from .runner import TestCaseRunner
from .sandbox import Sandbox, cleanup_sweep, create_sandbox
from .security import analyze_code
from .store import (
    ChallengeRepository,
    InMemoryChallengeRepository,
    InMemoryNotifier,
    InMemoryProgressStore,
    InMemorySubmissionStore,
    Notification,
    Notifier,
    ProgressStore,
    SubmissionStore,
)
from .submission import Submission

EVENTS = ("submission_created", "submission_terminal", "reward_granted")

# Limits of the debugging path when the request names none.
DEBUG_TIME_LIMIT_MS = 5000
DEBUG_MEMORY_LIMIT_MB = 50


class GradingEngine:
    """Accepts code, runs it in sandboxes and grades it against challenges."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        challenges: Optional[ChallengeRepository] = None,
        submissions: Optional[SubmissionStore] = None,
        progress: Optional[ProgressStore] = None,
        notifier: Optional[Notifier] = None,
        event_logger: Optional[Callable[[str, str], None]] = None,
        runtimes: Mapping[Language, LanguageRuntimeConfig] = RUNTIMES,
        policies: Mapping[Language, SecurityPolicy] = SECURITY_POLICIES,
        sweep_on_start: bool = True
    ):
        self.config = config or EngineConfig.default()
        is_valid, error = self.config.validate()
        if not is_valid:
            raise ValueError(f"Invalid configuration: {error}")

        self.challenges = challenges or InMemoryChallengeRepository()
        self.submissions = submissions or InMemorySubmissionStore()
        self.progress = progress or InMemoryProgressStore()
        self.notifier = notifier or InMemoryNotifier()
        self.event_logger = event_logger or EventLog(self.config.event_log_path)
        self.runtimes = runtimes
        self.policies = policies

        self.governor = ResourceGovernor(
            self.config.max_concurrent_sandboxes,
            queue_timeout_s=self.config.queue_timeout_s,
            poll_interval_ms=self.config.memory_poll_interval_ms,
            event_logger=self.event_logger
        )
        self.runner = TestCaseRunner(self.config, self.event_logger)
        self.grader = Grader()
        self._subscribers: Dict[str, List[Callable[[Any], None]]] = {e: [] for e in EVENTS}

        if sweep_on_start:
            cleanup_sweep(self.config, self.event_logger)
            atexit.register(cleanup_sweep, self.config, self.event_logger, True)

    # ===== EVENTS =====

    def _log(self, event: str, details: str = ""):
        self.event_logger(event, details)

    def subscribe(self, event: str, callback: Callable[[Any], None]):
        """Register a callback for submission_created, submission_terminal or reward_granted."""
        if event not in self._subscribers:
            raise ValueError(f"Unknown event '{event}'. Expected one of: {', '.join(EVENTS)}")
        self._subscribers[event].append(callback)

    def _emit(self, event: str, payload: Any):
        for callback in self._subscribers[event]:
            try:
                callback(payload)
            except Exception as e:
                self._log("SUBSCRIBER_ERROR", f"{event}: {type(e).__name__}: {e}")

    # ===== VALIDATION =====

    def _validate_request(self, code: str, language: str) -> Language:
        if not isinstance(code, str) or not code.strip():
            raise ValidationError("Code must be a non-empty string", ErrorCode.INVALID_CODE)
        resolved = resolve_language(language)
        if resolved is None or resolved not in self.runtimes or resolved not in self.policies:
            raise ValidationError(f"Unsupported language: {language}", ErrorCode.INVALID_LANGUAGE)
        return resolved

    def _validate_challenge(self, challenge_id: str) -> Challenge:
        challenge = self.challenges.get(challenge_id)
        if challenge is None:
            raise ValidationError(f"Challenge '{challenge_id}' not found", ErrorCode.INVALID_CHALLENGE)
        if not challenge.is_published:
            raise ValidationError(f"Challenge '{challenge_id}' is not published", ErrorCode.INVALID_CHALLENGE)
        if not challenge.test_cases:
            raise ValidationError(f"Challenge '{challenge_id}' has no test cases", ErrorCode.INVALID_CHALLENGE)
        return challenge

    def _sandbox(self, language: Language) -> Sandbox:
        return create_sandbox(
            language, self.governor, self.config, self.runtimes, self.policies, self.event_logger
        )

    # ===== DEBUG EXECUTION =====

    def execute(self, request: ExecuteRequest) -> ExecuteResponse:
        """
        Run code once against a given input, without a challenge.

        Limits default to 5000 ms / 50 MB and are capped by the language's policy.

        Raises:
            ValidationError: Empty code or unsupported language
        """
        language = self._validate_request(request.code, request.language)
        policy = self.policies[language]

        violated, reason = analyze_code(request.code, language, policy)
        if violated:
            self._log("SECURITY_VIOLATION", f"execute ({language.value}): {reason}")
            return ExecuteResponse(status=SubmissionStatus.FAILED, error=f"Security violation: {reason}")

        limits = resolve_limits(
            policy,
            time_limits_ms=(request.time_limit_ms or DEBUG_TIME_LIMIT_MS,),
            memory_limits_mb=(request.memory_limit_mb or DEBUG_MEMORY_LIMIT_MB,),
        )
        try:
            with self._sandbox(language).prepared(request.code) as prepared:
                result = prepared.run(request.input or "", limits)
        except CompilationError as e:
            self._log("COMPILATION_ERROR", f"execute ({language.value})")
            return ExecuteResponse(status=SubmissionStatus.COMPILATION_ERROR, error=e.output or e.message)
        except SandboxError as e:
            self._log("SANDBOX_ERROR", f"execute ({language.value}): {e.message}")
            return ExecuteResponse(status=SubmissionStatus.SYSTEM_ERROR, error=e.message)

        return ExecuteResponse.from_result(result)

    # ===== GRADED SUBMISSION =====

    def submit(self, user_id: str, request: SubmitRequest) -> EvaluationResponse:
        """
        Grade code against a challenge's test cases.

        Args:
            user_id: Authenticated user id (trusted, not verified here)
            request: Challenge id, code and language

        Returns:
            EvaluationResponse with hidden test cases redacted

        Raises:
            ValidationError: Request rejected before a submission was created
        """
        language = self._validate_request(request.code, request.language)
        challenge = self._validate_challenge(request.challenge_id)

        submission = Submission(
            user_id=user_id,
            challenge_id=challenge.id,
            language=language,
            code=request.code,
        )
        self.submissions.save(submission)
        self._log("SUBMISSION_CREATED", f"{submission.id} user={user_id} challenge={challenge.id} "
                                        f"language={language.value}")
        self._emit("submission_created", submission)

        previous_best = None
        try:
            with submission.guarded():
                submission.start()
                self.submissions.save(submission)
                previous_best = self._evaluate(submission, challenge)
        except Exception as e:
            self._log("SYSTEM_ERROR", f"{submission.id}: {type(e).__name__}: {e}")
            raise
        finally:
            self.submissions.save(submission)
            if submission.is_terminal:
                self._log("SUBMISSION_TERMINAL", f"{submission.id} status={submission.status.value} "
                                                 f"score={submission.score}")
                self._emit("submission_terminal", submission)

        if submission.score is not None and submission.score > (previous_best or 0):
            self._grant(submission, challenge)

        return self._response(submission)

    def _evaluate(self, submission: Submission, challenge: Challenge) -> Optional[int]:
        """
        Run and grade a RUNNING submission, leaving it terminal.

        Returns:
            The user's best score before this submission (None if none or not graded)
        """
        language = submission.language
        policy = self.policies[language]

        violated, reason = analyze_code(submission.code, language, policy)
        if violated:
            self._log("SECURITY_VIOLATION", f"{submission.id}: {reason}")
            submission.reject_security(reason)
            return None

        try:
            with self._sandbox(language).prepared(submission.code) as prepared:
                results = self.runner.run_all(prepared, challenge, policy)
        except CompilationError as e:
            self._log("COMPILATION_ERROR", f"{submission.id}: {e.message}")
            submission.reject_compilation(e.output or e.message)
            return None
        except SandboxError as e:
            self._log("SANDBOX_ERROR", f"{submission.id}: {e.message}")
            submission.fail_system(e.message, e.code.value)
            return None

        report = self.grader.grade(results)
        previous_best = self.progress.record_score(submission.user_id, challenge.id, report.score)
        xp, coins = self.grader.rewards(challenge, report.score, previous_best)
        submission.finalize(
            report.status,
            results=results,
            score=report.score,
            feedback=report.feedback,
            error_code=report.error_code,
            execution_time_ms=report.execution_time_ms,
            max_memory_mb=report.max_memory_mb,
            xp_earned=xp,
            coins_earned=coins,
        )
        return previous_best

    def _grant(self, submission: Submission, challenge: Challenge):
        """Apply rewards of an improved score and send the notifications."""
        before, after = self.progress.grant_rewards(
            submission.user_id,
            challenge.id,
            submission.xp_earned,
            submission.coins_earned,
            completed=submission.success,
        )
        self._log("REWARD_GRANTED", f"{submission.id} xp={submission.xp_earned} "
                                    f"coins={submission.coins_earned}")
        self._emit("reward_granted", submission)

        if submission.success and (submission.score == 100 or challenge.id not in before.completed_challenges):
            self.notifier.notify(Notification(
                user_id=submission.user_id,
                type="challenge_complete",
                title="Challenge Completed",
                message=f"You've completed the challenge: {challenge.title}",
                data={
                    "challenge_id": challenge.id,
                    "xp_earned": submission.xp_earned,
                    "coins_earned": submission.coins_earned,
                },
            ))

        if after.level > before.level:
            self.notifier.notify(Notification(
                user_id=submission.user_id,
                type="level_up",
                title="Level Up!",
                message=f"Level up! You are now level {after.level}",
                data={"old_level": before.level, "new_level": after.level},
            ))

        self.challenges.set_success_rate(challenge.id, self.submissions.success_rate(challenge.id))

    def _response(self, submission: Submission) -> EvaluationResponse:
        return EvaluationResponse(
            submission_id=submission.id,
            status=submission.status,
            success=submission.success,
            results=[public_result(r) for r in submission.results],
            score=submission.score,
            execution_time_ms=submission.execution_time_ms,
            max_memory_mb=submission.max_memory_mb,
            feedback=submission.feedback,
            error_code=submission.error_code,
            xp_earned=submission.xp_earned,
            coins_earned=submission.coins_earned,
        )

    # ===== QUERIES =====

    def history(self, user_id: str, challenge_id: Optional[str] = None,
                limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        """A user's submissions, newest first."""
        return [s.to_dict() for s in self.submissions.list_for_user(user_id, challenge_id, limit, offset)]

    def challenge_view(self, user_id: str, challenge_id: str) -> Dict[str, Any]:
        challenge = self._validate_challenge(challenge_id)
        completed = challenge.id in self.progress.get_stats(user_id).completed_challenges
        return public_challenge_view(challenge, completed=completed)

    def player_stats(self, user_id: str) -> Dict[str, Any]:
        return self.progress.get_stats(user_id).to_dict()
