"""
Tests for the managed interpreter, run directly in the test process.

The worker child it normally runs in is covered in test_sandbox.py.
"""

import sys
from dataclasses import replace

import pytest

from coderunner.governor import ResourceLimits
from coderunner.interpreter import RestrictedInterpreter
from coderunner.models import Language, SubmissionStatus
from coderunner.registry import SECURITY_POLICIES

PY = SECURITY_POLICIES[Language.PYTHON]
# Loop counting out of the way so only the clock can stop a run.
UNBOUNDED_LOOPS = replace(PY, max_loop_iterations=10 ** 12)
LIMITS = ResourceLimits(2000, 64)


@pytest.fixture
def interpreter():
    return RestrictedInterpreter(PY)


def run(interpreter, code, stdin="", limits=LIMITS):
    return interpreter.run(interpreter.prepare(code), stdin, limits)


class TestExecution:
    """Test ordinary programs."""

    def test_stdin_to_stdout(self, interpreter):
        result = run(interpreter, "a, b = map(int, input().split())\nprint(a + b)\n", "2 3\n")
        assert result.status == SubmissionStatus.COMPLETED
        assert result.output == "5\n"
        assert result.error is None
        assert result.memory_usage_mb is None

    def test_print_arguments(self, interpreter):
        result = run(interpreter, "print(1, 2, 3, sep='-', end='!')")
        assert result.output == "1-2-3!"

    def test_multiple_input_lines(self, interpreter):
        code = "n = int(input())\nfor _ in range(n):\n    print(input()[::-1])\n"
        result = run(interpreter, code, "2\nabc\nxy\n")
        assert result.output == "cba\nyx\n"

    def test_input_past_eof(self, interpreter):
        result = run(interpreter, "input()\ninput()", "only one line\n")
        assert result.status == SubmissionStatus.RUNTIME_ERROR
        assert "EOFError" in result.error

    def test_allowed_imports(self, interpreter):
        code = ("import math\nfrom collections import deque\n"
                "q = deque([1, 2])\nprint(math.isqrt(16), q.pop())\n")
        result = run(interpreter, code)
        assert result.output == "4 2\n"

    def test_classes(self, interpreter):
        code = (
            "class Base:\n"
            "    def __init__(self, x):\n"
            "        self._x = x\n"
            "class Child(Base):\n"
            "    def __init__(self, x):\n"
            "        super().__init__(x * 2)\n"
            "    def value(self):\n"
            "        return self._x\n"
            "print(Child(21).value())\n"
        )
        result = run(interpreter, code)
        assert result.status == SubmissionStatus.COMPLETED
        assert result.output == "42\n"

    def test_runs_are_independent(self, interpreter):
        """Globals of one run do not leak into the next."""
        program = interpreter.prepare("try:\n    counter += 1\nexcept NameError:\n    counter = 1\nprint(counter)")
        assert interpreter.run(program, "", LIMITS).output == "1\n"
        assert interpreter.run(program, "", LIMITS).output == "1\n"


class TestFailures:
    """Test runtime errors, limits and rejected code."""

    def test_runtime_error_with_line(self, interpreter):
        result = run(interpreter, "x = 1\ny = x / 0\n")
        assert result.status == SubmissionStatus.RUNTIME_ERROR
        assert result.error == "ZeroDivisionError: division by zero (line 2)"

    def test_output_before_error_is_kept(self, interpreter):
        result = run(interpreter, "print('partial')\nraise ValueError('bad')\n")
        assert result.output == "partial\n"
        assert "ValueError: bad" in result.error

    def test_syntax_error_reported_per_run(self, interpreter):
        result = run(interpreter, "def broken(:\n")
        assert result.status == SubmissionStatus.RUNTIME_ERROR
        assert result.error.startswith("SyntaxError")

    def test_timeout(self):
        interpreter = RestrictedInterpreter(UNBOUNDED_LOOPS)
        result = run(interpreter, "while True:\n    x = 1\n", limits=ResourceLimits(200, 64))
        assert result.status == SubmissionStatus.TIMEOUT
        assert "200 ms" in result.error

    def test_timeout_not_absorbed_by_user_handler(self):
        interpreter = RestrictedInterpreter(UNBOUNDED_LOOPS)
        code = "try:\n    while True:\n        pass\nexcept Exception:\n    print('caught')\n"
        result = run(interpreter, code, limits=ResourceLimits(200, 64))
        assert result.status == SubmissionStatus.TIMEOUT
        assert "caught" not in result.output

    def test_loop_limit(self):
        interpreter = RestrictedInterpreter(replace(PY, max_loop_iterations=100))
        result = run(interpreter, "i = 0\nwhile True:\n    i += 1\n")
        assert result.status == SubmissionStatus.RUNTIME_ERROR
        assert result.error.startswith("LoopLimitExceeded")

    def test_recursion_limit(self):
        interpreter = RestrictedInterpreter(replace(PY, max_recursion_depth=50))
        result = run(interpreter, "def f(n):\n    return f(n + 1)\nf(0)\n")
        assert result.status == SubmissionStatus.RUNTIME_ERROR
        assert result.error.startswith("RecursionLimitExceeded")

    def test_recursion_within_limit(self):
        interpreter = RestrictedInterpreter(replace(PY, max_recursion_depth=50))
        code = "def fact(n):\n    return 1 if n <= 1 else n * fact(n - 1)\nprint(fact(10))\n"
        assert run(interpreter, code).output == "3628800\n"

    def test_banned_import_at_runtime(self, interpreter):
        result = run(interpreter, "import socket\n")
        assert result.status == SubmissionStatus.RUNTIME_ERROR
        assert "ImportError" in result.error

    def test_unlisted_import_at_runtime(self, interpreter):
        result = run(interpreter, "import decimal\n")
        assert result.status == SubmissionStatus.RUNTIME_ERROR
        assert "allowed module list" in result.error

    @pytest.mark.parametrize("name", ["open", "eval", "getattr", "globals"])
    def test_dangerous_builtins_missing(self, interpreter, name):
        result = run(interpreter, f"f = {name}\n")
        assert result.status == SubmissionStatus.RUNTIME_ERROR
        assert "NameError" in result.error

    def test_dunder_access_rejected(self, interpreter):
        result = run(interpreter, "print(().__class__.__bases__)\n")
        assert result.status == SubmissionStatus.RUNTIME_ERROR
        assert result.error.startswith("SecurityError")

    def test_output_truncated(self):
        interpreter = RestrictedInterpreter(PY, max_output_bytes=10)
        result = run(interpreter, "print('x' * 100)\n")
        assert result.status == SubmissionStatus.COMPLETED
        assert result.output == "x" * 10

    def test_memory_error_is_memory_limit(self, interpreter):
        result = run(interpreter, "print('before')\nraise MemoryError()\n")
        assert result.status == SubmissionStatus.MEMORY_LIMIT_EXCEEDED
        assert result.error == "Memory limit exceeded (64 MB)"
        assert result.output == "before\n"

    def test_null_byte_source(self, interpreter):
        result = run(interpreter, "print(1)\x00\n")
        assert result.status == SubmissionStatus.RUNTIME_ERROR
        assert result.error.startswith("SyntaxError")


class TestTracing:
    def test_previous_trace_function_restored(self, interpreter):
        calls = []

        def tracer(frame, event, arg):
            calls.append(event)
            return None

        previous = sys.gettrace()
        sys.settrace(tracer)
        try:
            run(interpreter, "print(1)\n")
            assert sys.gettrace() is tracer
        finally:
            sys.settrace(previous)

    def test_module_views_are_per_run(self, interpreter):
        assert run(interpreter, "import math\nmath.marker = 1\n").status == SubmissionStatus.COMPLETED
        code = "import math\ntry:\n    print(math.marker)\nexcept AttributeError:\n    print('clean')\n"
        assert run(interpreter, code).output == "clean\n"
