"""
Data models for challenges, execution results and engine configuration.

Provides type-safe structures for Challenge, TestCase, TestCaseResult and the
request/response shapes exchanged at the engine boundary.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple


class Language(str, Enum):
    """Supported submission languages."""
    PYTHON = "python"
    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    JAVA = "java"
    CPP = "cpp"


class IsolationKind(str, Enum):
    """How a language's code is isolated while it runs."""
    RESTRICTED = "restricted"  # managed interpreter in a worker child
    WORKER = "worker"          # isolated child process
    CONTAINER = "container"    # isolated docker container


class SubmissionStatus(str, Enum):
    """Lifecycle states of a submission (also used for single executions)."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    MEMORY_LIMIT_EXCEEDED = "memory_limit_exceeded"
    COMPILATION_ERROR = "compilation_error"
    RUNTIME_ERROR = "runtime_error"
    SYSTEM_ERROR = "system_error"


TERMINAL_STATUSES = frozenset({
    SubmissionStatus.COMPLETED,
    SubmissionStatus.FAILED,
    SubmissionStatus.TIMEOUT,
    SubmissionStatus.MEMORY_LIMIT_EXCEEDED,
    SubmissionStatus.COMPILATION_ERROR,
    SubmissionStatus.RUNTIME_ERROR,
    SubmissionStatus.SYSTEM_ERROR,
})


class CaseStatus(str, Enum):
    """Outcome of a single test case."""
    PASSED = "passed"
    FAILED = "failed"  # ran cleanly, wrong output
    TIMEOUT = "timeout"
    MEMORY_LIMIT_EXCEEDED = "memory_limit_exceeded"
    RUNTIME_ERROR = "runtime_error"
    SYSTEM_ERROR = "system_error"
    NOT_RUN = "not_run"


HIDDEN_PLACEHOLDER = "(hidden)"


@dataclass(frozen=True)
class TestCase:
    """Represents a single test case for a challenge."""
    __test__ = False  # keep pytest from collecting this class

    id: str
    input: str
    expected_output: str
    hidden: bool = False
    explanation: Optional[str] = None
    time_limit_ms: Optional[int] = None
    memory_limit_mb: Optional[int] = None

    @staticmethod
    def from_dict(data: dict) -> 'TestCase':
        """Create a TestCase object from a dictionary."""
        return TestCase(
            id=str(data['id']),
            input=data.get('input', ''),
            expected_output=data['expected_output'],
            hidden=bool(data.get('hidden', False)),
            explanation=data.get('explanation'),
            time_limit_ms=data.get('time_limit_ms'),
            memory_limit_mb=data.get('memory_limit_mb'),
        )


@dataclass(frozen=True)
class Challenge:
    """Represents a programming challenge and its grading parameters."""
    id: str
    title: str
    test_cases: Tuple[TestCase, ...]
    time_limit_ms: int = 5000
    memory_limit_mb: int = 50
    xp_reward: int = 0
    coin_reward: int = 0
    is_published: bool = False
    description: str = ""
    difficulty: str = "easy"
    category: str = "basics"
    hints: Tuple[str, ...] = ()
    code_templates: Dict[Language, str] = field(default_factory=dict)
    solutions: Dict[Language, str] = field(default_factory=dict)
    success_rate: Optional[int] = None

    @staticmethod
    def from_dict(data: dict) -> 'Challenge':
        """Create a Challenge object from a dictionary."""
        return Challenge(
            id=str(data['id']),
            title=data['title'],
            test_cases=tuple(TestCase.from_dict(t) for t in data['test_cases']),
            time_limit_ms=data.get('time_limit_ms') or 5000,
            memory_limit_mb=data.get('memory_limit_mb') or 50,
            xp_reward=int(data.get('xp_reward', 0)),
            coin_reward=int(data.get('coin_reward', 0)),
            is_published=bool(data.get('is_published', False)),
            description=data.get('description', ''),
            difficulty=data.get('difficulty', 'easy'),
            category=data.get('category', 'basics'),
            hints=tuple(data.get('hints') or ()),
            code_templates={Language(k): v for k, v in (data.get('code_templates') or {}).items()},
            solutions={Language(k): v for k, v in (data.get('solutions') or {}).items()},
            success_rate=data.get('success_rate'),
        )


@dataclass
class ExecutionResult:
    """Raw outcome of running code once inside a sandbox."""
    status: SubmissionStatus
    output: str = ""
    error: Optional[str] = None
    execution_time_ms: float = 0.0
    memory_usage_mb: Optional[float] = None


@dataclass(frozen=True)
class TestCaseResult:
    """Result of one test case. Holds raw data; redact before display."""
    __test__ = False

    test_case_id: str
    passed: bool
    status: CaseStatus
    hidden: bool
    output: Optional[str] = None
    expected_output: Optional[str] = None
    error: Optional[str] = None
    execution_time_ms: Optional[float] = None
    memory_usage_mb: Optional[float] = None

    @staticmethod
    def not_run(test_case: TestCase) -> 'TestCaseResult':
        return TestCaseResult(
            test_case_id=test_case.id,
            passed=False,
            status=CaseStatus.NOT_RUN,
            hidden=test_case.hidden,
            expected_output=test_case.expected_output,
        )


def public_result(result: TestCaseResult) -> Dict[str, Any]:
    """
    Serialize a test case result for a user-visible response.

    Hidden cases are reduced to their id, pass/fail outcome and hidden flag so
    that neither their input-derived output nor the expected output leaks.
    """
    if result.hidden:
        return {
            "test_case_id": result.test_case_id,
            "passed": result.passed,
            "hidden": True,
        }
    return {
        "test_case_id": result.test_case_id,
        "passed": result.passed,
        "hidden": False,
        "status": result.status.value,
        "output": result.output,
        "expected_output": result.expected_output,
        "error": result.error,
        "execution_time_ms": result.execution_time_ms,
        "memory_usage_mb": result.memory_usage_mb,
    }


# ===== BOUNDARY SHAPES =====

@dataclass
class ExecuteRequest:
    """Run code once, without a challenge (debugging path)."""
    code: str
    language: str
    input: str = ""
    time_limit_ms: Optional[int] = None
    memory_limit_mb: Optional[int] = None


@dataclass
class ExecuteResponse:
    status: SubmissionStatus
    output: Optional[str] = None
    error: Optional[str] = None
    execution_time_ms: Optional[float] = None
    memory_usage_mb: Optional[float] = None

    @staticmethod
    def from_result(result: ExecutionResult) -> 'ExecuteResponse':
        return ExecuteResponse(
            status=result.status,
            output=result.output,
            error=result.error,
            execution_time_ms=result.execution_time_ms,
            memory_usage_mb=result.memory_usage_mb,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "execution_time_ms": self.execution_time_ms,
            "memory_usage_mb": self.memory_usage_mb,
        }


@dataclass
class SubmitRequest:
    """Graded run of code against a challenge's test cases."""
    challenge_id: str
    code: str
    language: str


@dataclass
class EvaluationResponse:
    """
    Result of a graded submission.

    `results` holds already-redacted dictionaries (see `public_result`); the
    raw TestCaseResult objects never leave the engine through this type.
    """
    submission_id: str
    status: SubmissionStatus
    success: bool
    results: Optional[List[Dict[str, Any]]] = None
    score: Optional[int] = None
    execution_time_ms: Optional[float] = None
    max_memory_mb: Optional[float] = None
    feedback: Optional[str] = None
    error_code: Optional[str] = None
    xp_earned: int = 0
    coins_earned: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "status": self.status.value,
            "results": self.results,
            "score": self.score,
            "execution_time_ms": self.execution_time_ms,
            "max_memory_mb": self.max_memory_mb,
            "feedback": self.feedback,
            "error_code": self.error_code,
            "xp_earned": self.xp_earned,
            "coins_earned": self.coins_earned,
            "success": self.success,
        }


# ===== ENGINE CONFIGURATION =====

@dataclass
class EngineConfig:
    """
    Host-level configuration for the grading engine.

    Attributes:
        max_concurrent_sandboxes: Sandboxes allowed to run at once on this host
        case_parallelism: Test cases of one submission run concurrently (1 = sequential)
        submission_time_budget_ms: Wall-clock budget for all cases of one submission
        compile_timeout_ms: Time allowed for a compile step
        queue_timeout_s: How long a run may wait for a free sandbox slot
        max_output_bytes: Captured stdout/stderr is truncated to this size
        memory_poll_interval_ms: Sampling period of the memory watchdog
        workspace_root: Parent directory of ephemeral workspaces (None = system temp)
        docker_binary: Docker CLI used for container isolation
        stale_workspace_age_s: Age after which the cleanup sweep removes leftovers
        event_log_path: File receiving event log lines (None = memory only)
    """
    max_concurrent_sandboxes: int
    case_parallelism: int
    submission_time_budget_ms: int
    compile_timeout_ms: int
    queue_timeout_s: float
    max_output_bytes: int
    memory_poll_interval_ms: int
    workspace_root: Optional[str]
    docker_binary: str
    stale_workspace_age_s: int
    event_log_path: Optional[str]

    @staticmethod
    def from_dict(data: dict) -> 'EngineConfig':
        """Create EngineConfig from dictionary."""
        defaults = EngineConfig.default()
        return EngineConfig(
            max_concurrent_sandboxes=int(data.get('max_concurrent_sandboxes', defaults.max_concurrent_sandboxes)),
            case_parallelism=int(data.get('case_parallelism', defaults.case_parallelism)),
            submission_time_budget_ms=int(data.get('submission_time_budget_ms', defaults.submission_time_budget_ms)),
            compile_timeout_ms=int(data.get('compile_timeout_ms', defaults.compile_timeout_ms)),
            queue_timeout_s=float(data.get('queue_timeout_s', defaults.queue_timeout_s)),
            max_output_bytes=int(data.get('max_output_bytes', defaults.max_output_bytes)),
            memory_poll_interval_ms=int(data.get('memory_poll_interval_ms', defaults.memory_poll_interval_ms)),
            workspace_root=data.get('workspace_root', defaults.workspace_root),
            docker_binary=data.get('docker_binary', defaults.docker_binary),
            stale_workspace_age_s=int(data.get('stale_workspace_age_s', defaults.stale_workspace_age_s)),
            event_log_path=data.get('event_log_path', defaults.event_log_path),
        )

    def validate(self) -> Tuple[bool, str]:
        """
        Validate configuration consistency.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if self.max_concurrent_sandboxes < 1:
            return False, "max_concurrent_sandboxes must be at least 1"

        if self.case_parallelism < 1:
            return False, "case_parallelism must be at least 1"

        if self.case_parallelism > self.max_concurrent_sandboxes:
            return False, (f"case_parallelism ({self.case_parallelism}) cannot exceed "
                           f"max_concurrent_sandboxes ({self.max_concurrent_sandboxes})")

        if any(x <= 0 for x in [self.submission_time_budget_ms, self.compile_timeout_ms,
                                self.queue_timeout_s, self.max_output_bytes,
                                self.memory_poll_interval_ms]):
            return False, "Time limits, output size and poll interval must be positive"

        if self.stale_workspace_age_s < 0:
            return False, "stale_workspace_age_s must be non-negative"

        if self.workspace_root is not None and not os.path.isdir(self.workspace_root):
            return False, f"workspace_root '{self.workspace_root}' is not a directory"

        return True, ""

    @staticmethod
    def default() -> 'EngineConfig':
        """Return the default configuration."""
        return EngineConfig(
            max_concurrent_sandboxes=max(1, os.cpu_count() or 1),
            case_parallelism=1,
            submission_time_budget_ms=60000,
            compile_timeout_ms=30000,
            queue_timeout_s=120.0,
            max_output_bytes=64 * 1024,
            memory_poll_interval_ms=50,
            workspace_root=None,
            docker_binary='docker',
            stale_workspace_age_s=3600,
            event_log_path=None,
        )
