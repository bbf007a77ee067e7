"""
Shared fixtures for the coderunner test suite.
"""

import sys
from dataclasses import replace
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from coderunner.models import Challenge, EngineConfig, IsolationKind, TestCase
from coderunner.registry import LanguageRuntimeConfig, SecurityPolicy

SUM_SOLUTION = "a, b = map(int, input().split())\nprint(a + b)\n"

# Python run as an isolated worker process instead of the managed interpreter.
PYTHON_WORKER = LanguageRuntimeConfig(
    file_extension="py",
    source_file="main.py",
    run_command=(sys.executable, "-I", "-B", "main.py"),
    isolation=IsolationKind.WORKER,
)

# Same, with a byte-compile step so compile failures can be exercised.
PYTHON_WORKER_COMPILED = replace(
    PYTHON_WORKER,
    compile_command=(sys.executable, "-I", "-B", "-m", "py_compile", "main.py"),
)

PERMISSIVE_POLICY = SecurityPolicy(
    banned_functions=frozenset(),
    banned_modules=frozenset(),
    max_execution_time_ms=5000,
    max_memory_mb=512,
)


@pytest.fixture
def config(tmp_path):
    """Engine configuration with workspaces under the test's tmp dir."""
    return replace(
        EngineConfig.default(),
        max_concurrent_sandboxes=4,
        workspace_root=str(tmp_path),
    )


@pytest.fixture
def make_challenge():
    """Factory for published challenges; cases are (id, input, expected[, hidden])."""
    def factory(challenge_id="sum", cases=None, **kwargs):
        if cases is None:
            cases = [("1", "1 2", "3"), ("2", "5 5", "10"), ("3", "0 0", "0", True)]
        test_cases = tuple(
            TestCase(id=c[0], input=c[1], expected_output=c[2], hidden=len(c) > 3 and c[3])
            for c in cases
        )
        fields = dict(
            title=f"Challenge {challenge_id}",
            xp_reward=100,
            coin_reward=50,
            is_published=True,
        )
        fields.update(kwargs)
        return Challenge(id=challenge_id, test_cases=test_cases, **fields)
    return factory
