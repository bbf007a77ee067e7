"""
Managed interpreter for Python submissions.

The source is parsed, checked for reaches into interpreter internals, and
instrumented with loop counters before it is compiled once. A run executes the
compiled module in a fresh global namespace with restricted builtins and its
own stdin/stdout buffers. A trace function enforces the wall-clock deadline
and the recursion ceiling.

Runs happen in a worker child started as `python -m coderunner.interpreter`
(see sandbox.RestrictedSandbox). The child caps its own address space at the
memory limit on top of what the interpreter already uses, prints the program's
output on stdout and reports how the run ended as one JSON line on stderr.
"""

import argparse
import ast
import builtins
import io
import json
import platform
import sys
import traceback
import types
from dataclasses import dataclass
from typing import Optional

import psutil

from .governor import Deadline, ExecutionTimeout, ResourceLimits
from .models import ExecutionResult, SubmissionStatus
from .registry import SecurityPolicy
from .security import (
    ExecutionAborted,
    LOOP_GUARD_NAME,
    LoopGuard,
    RecursionLimitExceeded,
    RestrictedImporter,
    check_restricted_tree,
    instrument,
)

SOURCE_NAME = "<submission>"

_SAFE_BUILTINS = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytearray", "bytes", "callable",
    "chr", "classmethod", "complex", "dict", "divmod", "enumerate", "filter",
    "float", "format", "frozenset", "hasattr", "hash", "hex", "id", "int",
    "isinstance", "issubclass", "iter", "len", "list", "map", "max", "min",
    "next", "object", "oct", "ord", "pow", "property", "range", "repr",
    "reversed", "round", "set", "slice", "sorted", "staticmethod", "str", "sum",
    "super", "tuple", "type", "zip",
    # exceptions user code commonly raises or catches
    "ArithmeticError", "AssertionError", "AttributeError", "EOFError",
    "Exception", "IndexError", "KeyError", "LookupError", "MemoryError", "NameError",
    "NotImplementedError", "OverflowError", "RecursionError", "RuntimeError",
    "StopIteration", "TypeError", "ValueError", "ZeroDivisionError",
    # needed for class statements
    "__build_class__",
)


@dataclass
class PreparedProgram:
    """A compiled submission, or the reason it cannot run."""
    code: Optional[types.CodeType]
    error: Optional[str] = None


class _OutputBuffer:
    """stdout replacement that stops accepting text past a byte cap."""

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self.truncated = False
        self._buffer = io.StringIO()
        self._size = 0

    def write(self, text: str) -> int:
        if self.truncated:
            return 0
        encoded = len(text.encode('utf-8'))
        if self._size + encoded > self.max_bytes:
            remaining = self.max_bytes - self._size
            text = text.encode('utf-8')[:remaining].decode('utf-8', errors='ignore')
            self.truncated = True
        self._buffer.write(text)
        self._size += len(text.encode('utf-8'))
        return len(text)

    def getvalue(self) -> str:
        return self._buffer.getvalue()


class _Tracer:
    """Trace function: deadline on every line, depth on every call."""

    def __init__(self, deadline: Deadline, max_depth: int):
        self.deadline = deadline
        self.max_depth = max_depth
        self.depth = 0

    def __call__(self, frame, event, arg):
        if event != 'call' or frame.f_code.co_filename != SOURCE_NAME:
            return None
        self.depth += 1
        if self.depth > self.max_depth:
            raise RecursionLimitExceeded(
                f"Maximum recursion depth exceeded ({self.max_depth})"
            )
        return self._local

    def _local(self, frame, event, arg):
        if event == 'return':
            self.depth -= 1
        elif event == 'line' and self.deadline.expired():
            raise ExecutionTimeout("Execution timed out")
        return self._local


def _describe_error(exc: BaseException) -> str:
    """`Type: message (line N)` using the innermost frame of user code."""
    lineno = None
    for frame, line in traceback.walk_tb(exc.__traceback__):
        if frame.f_code.co_filename == SOURCE_NAME:
            lineno = line
    message = f"{type(exc).__name__}: {exc}"
    if lineno is not None:
        message += f" (line {lineno})"
    return message


class RestrictedInterpreter:
    """Runs prepared Python programs under a SecurityPolicy."""

    def __init__(self, policy: SecurityPolicy, max_output_bytes: int = 64 * 1024):
        self.policy = policy
        self.max_output_bytes = max_output_bytes

    def prepare(self, source: str) -> PreparedProgram:
        """
        Parse, check and instrument the source once.

        Syntax errors and rejected constructs do not raise; they are reported
        as a runtime error by every run of the program.
        """
        try:
            tree = ast.parse(source, filename=SOURCE_NAME)
        except SyntaxError as e:
            return PreparedProgram(None, f"SyntaxError: {e.msg} (line {e.lineno})")
        except (ValueError, RecursionError) as e:
            # null bytes, nesting deeper than the parser handles
            return PreparedProgram(None, f"SyntaxError: {e}")

        reason = check_restricted_tree(tree)
        if reason:
            return PreparedProgram(None, f"SecurityError: {reason}")

        try:
            return PreparedProgram(compile(instrument(tree), SOURCE_NAME, 'exec'))
        except RecursionError:
            return PreparedProgram(None, "SyntaxError: program is nested too deeply")

    def _globals(self, stdout: _OutputBuffer, stdin: io.StringIO, guard: LoopGuard) -> dict:
        safe = {name: getattr(builtins, name) for name in _SAFE_BUILTINS}

        def _print(*args, sep=' ', end='\n', file=None, flush=False):
            stdout.write(sep.join(str(a) for a in args) + end)

        def _input(prompt=''):
            if prompt:
                stdout.write(str(prompt))
            line = stdin.readline()
            if not line:
                raise EOFError("EOF when reading a line")
            return line.rstrip('\n')

        safe['print'] = _print
        safe['input'] = _input
        # A fresh importer per run, so module views never carry state between runs.
        safe['__import__'] = RestrictedImporter(self.policy)
        return {
            '__builtins__': safe,
            '__name__': '__main__',
            LOOP_GUARD_NAME: guard,
        }

    def run(self, program: PreparedProgram, stdin: str, limits: ResourceLimits) -> ExecutionResult:
        """
        Execute the program once with the given input, in the calling thread.

        The deadline is checked between lines of user code; code blocked
        inside a native call is stopped by whoever supervises the process.
        """
        if program.code is None:
            return ExecutionResult(status=SubmissionStatus.RUNTIME_ERROR, error=program.error)

        stdout = _OutputBuffer(self.max_output_bytes)
        namespace = self._globals(stdout, io.StringIO(stdin), LoopGuard(self.policy.max_loop_iterations))
        deadline = Deadline(limits.timeout_sec)
        status = SubmissionStatus.COMPLETED
        error = None

        previous_trace = sys.gettrace()
        sys.settrace(_Tracer(deadline, self.policy.max_recursion_depth))
        try:
            exec(program.code, namespace)
        except ExecutionTimeout:
            status = SubmissionStatus.TIMEOUT
            error = f"Execution timed out after {limits.time_limit_ms} ms"
        except ExecutionAborted as e:
            status = SubmissionStatus.RUNTIME_ERROR
            error = f"{type(e).__name__}: {e}"
        except MemoryError:
            status = SubmissionStatus.MEMORY_LIMIT_EXCEEDED
            error = f"Memory limit exceeded ({limits.memory_limit_mb} MB)"
        except Exception as e:
            status = SubmissionStatus.RUNTIME_ERROR
            error = _describe_error(e)
        finally:
            sys.settrace(previous_trace)

        return ExecutionResult(
            status=status,
            output=stdout.getvalue(),
            error=error,
            execution_time_ms=round(deadline.elapsed_ms(), 2),
        )


# ===== WORKER CHILD ENTRY POINT =====

_MB = 1024 * 1024
_MAX_ERROR_CHARS = 4096


def cap_address_space(memory_limit_mb: int) -> bool:
    """
    Limit this process's address space to what it uses now plus the limit.

    Allocations past the cap raise MemoryError in user code. Returns False
    where the platform does not support it.
    """
    if platform.system() == "Windows":
        return False
    import resource
    cap = psutil.Process().memory_info().vms + memory_limit_mb * _MB
    _, hard = resource.getrlimit(resource.RLIMIT_AS)
    if hard != resource.RLIM_INFINITY:
        cap = min(cap, hard)
    try:
        resource.setrlimit(resource.RLIMIT_AS, (cap, hard))
    except (ValueError, OSError):
        # macOS accepts RLIMIT_AS only in some configurations
        return False
    return True


def _peak_rss_bytes() -> Optional[int]:
    if platform.system() == "Windows":
        return None
    import resource
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # kilobytes on Linux, bytes on macOS
    return peak if platform.system() == "Darwin" else peak * 1024


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m coderunner.interpreter",
        description="Run one Python submission in the managed interpreter (worker child).",
    )
    parser.add_argument("source", help="Submission source file")
    parser.add_argument("--policy", required=True, help="SecurityPolicy as JSON")
    parser.add_argument("--time-limit-ms", type=int, required=True)
    parser.add_argument("--memory-limit-mb", type=int, required=True)
    parser.add_argument("--max-output-bytes", type=int, default=64 * 1024)
    args = parser.parse_args(argv)

    policy = SecurityPolicy.from_dict(json.loads(args.policy))
    interpreter = RestrictedInterpreter(policy, max_output_bytes=args.max_output_bytes)
    with open(args.source, 'r', encoding='utf-8') as f:
        program = interpreter.prepare(f.read())
    stdin = sys.stdin.read()
    limits = ResourceLimits(args.time_limit_ms, args.memory_limit_mb)

    baseline_rss = psutil.Process().memory_info().rss
    cap_address_space(args.memory_limit_mb)
    result = interpreter.run(program, stdin, limits)

    sys.stdout.write(result.output or "")
    sys.stdout.flush()
    # The status line has to fit in the stderr bytes the host keeps, escapes included.
    error_chars = min(_MAX_ERROR_CHARS, args.max_output_bytes // 8)
    peak_rss = _peak_rss_bytes()
    used = None if peak_rss is None else round(max(0, peak_rss - baseline_rss) / _MB, 2)
    sys.stderr.write(json.dumps({
        "status": result.status.value,
        "error": result.error[:error_chars] if result.error else None,
        "execution_time_ms": result.execution_time_ms,
        "memory_usage_mb": used,
    }) + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
