"""
Sandbox dispatcher and isolation strategies.

A Sandbox is picked from SANDBOX_TYPES by the language's isolation kind.
`Sandbox.prepared(code)` builds the submission once (compiling where the
runtime has a compile step) and yields a PreparedCode whose `run()` gives each
test case its own workspace, process, container or interpreter instance.

Isolation kinds:
- restricted: managed interpreter (see interpreter.py) in a worker child
- worker: child process in its own session, sanitized environment, POSIX rlimits
- container: `docker run` without network, with memory/pids caps and a read-only root
"""

import json
import os
import platform
import shutil
import signal
import subprocess
import tempfile
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Sequence, Type

import psutil

from .errors import CompilationError, SandboxError
from .governor import ResourceGovernor, ResourceLimits, SupervisedRun, force_kill
from .interpreter import PreparedProgram, RestrictedInterpreter
from .models import EngineConfig, ExecutionResult, IsolationKind, Language, SubmissionStatus
from .registry import LanguageRuntimeConfig, RUNTIMES, SECURITY_POLICIES, SecurityPolicy

WORKSPACE_PREFIX = "coderunner-"
CONTAINER_LABEL = "coderunner.sandbox"
OWNER_LABEL = "coderunner.owner"
CONTAINER_PIDS_LIMIT = 64
COMPILE_MEMORY_MB = 1024
DOCKER_CLI_TIMEOUT_SEC = 30
INTERPRETER_STARTUP_MS = 2000

# Directory holding the coderunner package, put on the interpreter child's path.
PACKAGE_ROOT = Path(__file__).resolve().parent.parent

# Worker process groups still running, for the cleanup sweep.
_live_processes: Dict[int, subprocess.Popen] = {}
_live_lock = threading.Lock()


def _decode(data: bytes, max_bytes: int) -> str:
    return data[:max_bytes].decode('utf-8', errors='replace')


class PreparedCode:
    """A built submission, ready to be run once per test case."""

    def __init__(self, sandbox: 'Sandbox', artifact: Any):
        self.sandbox = sandbox
        self.artifact = artifact

    def run(self, stdin: str, limits: ResourceLimits) -> ExecutionResult:
        """Run against one input, holding a host sandbox slot while it runs."""
        with self.sandbox.governor.slot():
            return self.sandbox._execute(self.artifact, stdin, limits)


class Sandbox(ABC):
    """Base class of the isolation strategies."""

    isolation: IsolationKind

    def __init__(
        self,
        runtime: LanguageRuntimeConfig,
        policy: SecurityPolicy,
        governor: ResourceGovernor,
        config: EngineConfig,
        event_logger: Optional[Callable[[str, str], None]] = None
    ):
        self.runtime = runtime
        self.policy = policy
        self.governor = governor
        self.config = config
        self.event_logger = event_logger

    def _log(self, event: str, details: str = ""):
        if self.event_logger:
            self.event_logger(event, details)

    @contextmanager
    def prepared(self, code: str) -> Iterator[PreparedCode]:
        """
        Build the code once for all test cases.

        Raises:
            CompilationError: The compile step exited non-zero or timed out
            SandboxError: The environment could not be created
        """
        with self._artifact(code) as artifact:
            yield PreparedCode(self, artifact)

    @abstractmethod
    def _artifact(self, code: str):
        """Context manager yielding whatever `_execute` needs to run the code."""

    @abstractmethod
    def _execute(self, artifact: Any, stdin: str, limits: ResourceLimits) -> ExecutionResult:
        """Run the built artifact once in a fresh environment."""


class ProcessSandbox(Sandbox):
    """Shared workspace and compile handling for process based isolation."""

    @contextmanager
    def _workspace(self) -> Iterator[str]:
        try:
            workspace = tempfile.TemporaryDirectory(
                prefix=WORKSPACE_PREFIX, dir=self.config.workspace_root
            )
        except OSError as e:
            raise SandboxError(f"Could not create workspace: {e}")
        with workspace as path:
            yield path

    @contextmanager
    def _artifact(self, code: str):
        with self._workspace() as build_dir:
            source = Path(build_dir) / self.runtime.source_file
            source.write_text(code, encoding='utf-8')
            if self.runtime.compile_command:
                self._compile(build_dir)
            yield build_dir

    def _compile(self, build_dir: str):
        limits = ResourceLimits(self.config.compile_timeout_ms, COMPILE_MEMORY_MB)
        with self.governor.slot():
            run = self._launch(self.runtime.compile_command, build_dir, limits, compile_step=True)

        output = _decode(run.stderr + run.stdout, self.config.max_output_bytes).strip()
        if run.timed_out:
            raise CompilationError(
                f"Compilation timed out after {self.config.compile_timeout_ms} ms", output=output
            )
        if run.returncode != 0:
            raise CompilationError("Compilation failed", output=output)

    def _execute(self, build_dir: str, stdin: str, limits: ResourceLimits) -> ExecutionResult:
        with self._workspace() as case_dir:
            shutil.copytree(build_dir, case_dir, dirs_exist_ok=True)
            run = self._launch(
                self.runtime.run_command, case_dir, limits, stdin=stdin.encode('utf-8')
            )
        return self._to_result(run, limits)

    def _to_result(self, run: SupervisedRun, limits: ResourceLimits) -> ExecutionResult:
        max_bytes = self.config.max_output_bytes
        stdout = _decode(run.stdout, max_bytes)
        stderr = _decode(run.stderr, max_bytes)
        elapsed = round(run.elapsed_ms, 2)

        if run.memory_exceeded:
            return ExecutionResult(
                status=SubmissionStatus.MEMORY_LIMIT_EXCEEDED,
                output=stdout,
                error=f"Memory limit exceeded ({limits.memory_limit_mb} MB)",
                execution_time_ms=elapsed,
                memory_usage_mb=run.peak_memory_mb,
            )
        if run.timed_out or self._cpu_limit_hit(run):
            return ExecutionResult(
                status=SubmissionStatus.TIMEOUT,
                output=stdout,
                error=f"Execution timed out after {limits.time_limit_ms} ms",
                execution_time_ms=elapsed,
                memory_usage_mb=run.peak_memory_mb,
            )
        if run.returncode != 0:
            return ExecutionResult(
                status=SubmissionStatus.RUNTIME_ERROR,
                output=stdout,
                error=stderr.strip() or f"Process exited with code {run.returncode}",
                execution_time_ms=elapsed,
                memory_usage_mb=run.peak_memory_mb,
            )
        return ExecutionResult(
            status=SubmissionStatus.COMPLETED,
            output=stdout,
            error=stderr or None,
            execution_time_ms=elapsed,
            memory_usage_mb=run.peak_memory_mb,
        )

    def _cpu_limit_hit(self, run: SupervisedRun) -> bool:
        return False

    @abstractmethod
    def _launch(
        self,
        command: Sequence[str],
        workdir: str,
        limits: ResourceLimits,
        stdin: bytes = b"",
        compile_step: bool = False
    ) -> SupervisedRun:
        """Start the command in workdir and supervise it to completion."""


class WorkerSandbox(ProcessSandbox):
    """Child process in its own session with rlimits and an RSS watchdog."""

    isolation = IsolationKind.WORKER
    watch_memory = True

    def _environment(self, workdir: str) -> Dict[str, str]:
        return {
            "PATH": os.environ.get("PATH", os.defpath),
            "HOME": workdir,
            "TMPDIR": workdir,
            "LANG": "C.UTF-8",
        }

    def _spawn(self, command: Sequence[str], workdir: str, limits: ResourceLimits) -> subprocess.Popen:
        kwargs = {}
        if platform.system() != "Windows":
            cpu_seconds = int(limits.timeout_sec) + 1
            file_bytes = self.config.max_output_bytes * 16

            # Unix-like systems: resource limits applied in the child
            def set_limits():
                import resource
                resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds))
                resource.setrlimit(resource.RLIMIT_FSIZE, (file_bytes, file_bytes))
                resource.setrlimit(resource.RLIMIT_CORE, (0, 0))

            kwargs = {"start_new_session": True, "preexec_fn": set_limits}

        try:
            return subprocess.Popen(
                list(command),
                cwd=workdir,
                env=self._environment(workdir),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **kwargs
            )
        except FileNotFoundError:
            raise SandboxError(f"Runtime binary not found: {command[0]}")
        except (OSError, subprocess.SubprocessError) as e:
            raise SandboxError(f"Could not start {command[0]}: {e}")

    def _launch(self, command, workdir, limits, stdin=b"", compile_step=False) -> SupervisedRun:
        proc = self._spawn(command, workdir, limits)
        with _live_lock:
            _live_processes[proc.pid] = proc
        try:
            return self.governor.supervise(
                proc, stdin, limits,
                watch_memory=self.watch_memory and not compile_step,
                max_output_bytes=self.config.max_output_bytes,
            )
        finally:
            # Reap anything the program left behind in its session.
            force_kill(proc)
            with _live_lock:
                _live_processes.pop(proc.pid, None)

    def _cpu_limit_hit(self, run: SupervisedRun) -> bool:
        # RLIMIT_CPU delivers SIGXCPU before the wall clock runs out
        sigxcpu = getattr(signal, "SIGXCPU", None)
        return sigxcpu is not None and run.returncode == -sigxcpu


class RestrictedSandbox(WorkerSandbox):
    """
    Python in the managed interpreter, inside a worker child.

    The source is checked and compiled on the host first so that syntax errors
    and rejected constructs never start a process. Each test case then runs
    `python -m coderunner.interpreter` with the policy and limits on its command
    line. The child enforces imports, loops, recursion, the deadline between
    lines and its own address-space cap; the host keeps the worker's session,
    rlimits and wall-clock kill for anything the child cannot stop itself.
    """

    isolation = IsolationKind.RESTRICTED
    # The child caps its own address space; the RSS watchdog would count the
    # interpreter's baseline against the program.
    watch_memory = False

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.interpreter = RestrictedInterpreter(self.policy, max_output_bytes=self.config.max_output_bytes)

    @contextmanager
    def _artifact(self, code: str):
        program = self.interpreter.prepare(code)
        if program.code is None:
            yield program
            return
        with super()._artifact(code) as build_dir:
            yield build_dir

    def _execute(self, artifact, stdin: str, limits: ResourceLimits) -> ExecutionResult:
        if isinstance(artifact, PreparedProgram):
            return ExecutionResult(status=SubmissionStatus.RUNTIME_ERROR, error=artifact.error)
        return super()._execute(artifact, stdin, limits)

    def _environment(self, workdir: str) -> Dict[str, str]:
        env = super()._environment(workdir)
        env["PYTHONPATH"] = str(PACKAGE_ROOT)
        return env

    def _launch(self, command, workdir, limits, stdin=b"", compile_step=False) -> SupervisedRun:
        command = list(command) + [
            "--policy", json.dumps(self.policy.to_dict()),
            "--time-limit-ms", str(limits.time_limit_ms),
            "--memory-limit-mb", str(limits.memory_limit_mb),
            "--max-output-bytes", str(self.config.max_output_bytes),
        ]
        # The interpreter's own start-up does not count against the program.
        host_limits = replace(limits, time_limit_ms=limits.time_limit_ms + INTERPRETER_STARTUP_MS)
        return super()._launch(command, workdir, host_limits, stdin, compile_step)

    def _to_result(self, run: SupervisedRun, limits: ResourceLimits) -> ExecutionResult:
        report = None if run.timed_out else _child_report(run.stderr)
        if report is None:
            # Killed or crashed before reporting
            return super()._to_result(run, limits)
        return ExecutionResult(
            status=SubmissionStatus(report["status"]),
            output=_decode(run.stdout, self.config.max_output_bytes),
            error=report.get("error"),
            execution_time_ms=report.get("execution_time_ms"),
            memory_usage_mb=report.get("memory_usage_mb"),
        )


def _child_report(stderr: bytes) -> Optional[Dict[str, Any]]:
    """The interpreter child's JSON status line (last line of stderr), if any."""
    lines = stderr.decode('utf-8', errors='replace').strip().splitlines()
    if not lines:
        return None
    try:
        report = json.loads(lines[-1])
    except ValueError:
        return None
    return report if isinstance(report, dict) and "status" in report else None


class ContainerSandbox(ProcessSandbox):
    """`docker run` per build and per test case; Docker enforces the memory cap."""

    isolation = IsolationKind.CONTAINER

    def _docker(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.config.docker_binary, *args],
                capture_output=True,
                timeout=DOCKER_CLI_TIMEOUT_SEC,
                check=False
            )
        except FileNotFoundError:
            raise SandboxError(f"Docker CLI not found: {self.config.docker_binary}")
        except subprocess.TimeoutExpired:
            raise SandboxError(f"docker {args[0]} did not return within {DOCKER_CLI_TIMEOUT_SEC}s")

    def _run_args(self, name: str, workdir: str, limits: ResourceLimits, compile_step: bool):
        args = [
            self.config.docker_binary, "run",
            "--name", name,
            "--label", f"{CONTAINER_LABEL}=1",
            "--label", f"{OWNER_LABEL}={os.getpid()}",
            "--network", "none",
            "--memory", f"{limits.memory_limit_mb}m",
            "--memory-swap", f"{limits.memory_limit_mb}m",
            "--pids-limit", str(CONTAINER_PIDS_LIMIT),
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "-i",
            "-w", "/app",
        ]
        if hasattr(os, "getuid"):
            args += ["--user", f"{os.getuid()}:{os.getgid()}"]
        if compile_step:
            args += ["-v", f"{workdir}:/app"]
        else:
            args += ["--read-only", "--tmpfs", "/tmp:rw,size=64m", "-v", f"{workdir}:/app:ro"]
        return args + [self.runtime.image]

    def _launch(self, command, workdir, limits, stdin=b"", compile_step=False) -> SupervisedRun:
        name = f"{WORKSPACE_PREFIX}{uuid.uuid4().hex[:12]}"
        args = self._run_args(name, workdir, limits, compile_step) + list(command)
        try:
            proc = subprocess.Popen(
                args,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE
            )
        except FileNotFoundError:
            raise SandboxError(f"Docker CLI not found: {self.config.docker_binary}")
        except OSError as e:
            raise SandboxError(f"Could not start container: {e}")

        try:
            run = self.governor.supervise(
                proc, stdin, limits,
                kill=lambda: self._docker("kill", name),
                watch_memory=False,
                max_output_bytes=self.config.max_output_bytes,
            )
            if run.returncode == 125:
                raise SandboxError(
                    f"Container failed to start: {_decode(run.stderr, 1024).strip()}"
                )
            if not run.timed_out and self._oom_killed(name, run.returncode):
                run.memory_exceeded = True
            return run
        finally:
            self._remove(name)

    def _oom_killed(self, name: str, returncode: Optional[int]) -> bool:
        result = self._docker("inspect", "-f", "{{.State.OOMKilled}}", name)
        if result.returncode == 0:
            return result.stdout.decode().strip() == "true"
        return returncode == 137

    def _remove(self, name: str):
        try:
            self._docker("rm", "-f", name)
        except SandboxError as e:
            self._log("SANDBOX_CLEANUP_FAILED", f"{name}: {e.message}")


SANDBOX_TYPES: Mapping[IsolationKind, Type[Sandbox]] = MappingProxyType({
    IsolationKind.RESTRICTED: RestrictedSandbox,
    IsolationKind.WORKER: WorkerSandbox,
    IsolationKind.CONTAINER: ContainerSandbox,
})


def create_sandbox(
    language: Language,
    governor: ResourceGovernor,
    config: EngineConfig,
    runtimes: Mapping[Language, LanguageRuntimeConfig] = RUNTIMES,
    policies: Mapping[Language, SecurityPolicy] = SECURITY_POLICIES,
    event_logger: Optional[Callable[[str, str], None]] = None
) -> Sandbox:
    """Pick and construct the sandbox for a language's isolation kind."""
    runtime = runtimes[language]
    sandbox_type = SANDBOX_TYPES[runtime.isolation]
    return sandbox_type(runtime, policies[language], governor, config, event_logger)


# ===== CLEANUP SWEEP =====

def _sweep_workspaces(config: EngineConfig) -> int:
    root = Path(config.workspace_root or tempfile.gettempdir())
    cutoff = time.time() - config.stale_workspace_age_s
    removed = 0
    for entry in root.glob(f"{WORKSPACE_PREFIX}*"):
        try:
            if entry.is_dir() and entry.stat().st_mtime < cutoff:
                shutil.rmtree(entry)
                removed += 1
        except OSError:
            # Vanished or owned by someone else; the next sweep retries.
            continue
    return removed


def _sweep_containers(config: EngineConfig, only_own: bool) -> int:
    if shutil.which(config.docker_binary) is None:
        return 0
    try:
        listing = subprocess.run(
            [config.docker_binary, "ps", "-a",
             "--filter", f"label={CONTAINER_LABEL}",
             "--format", f'{{{{.ID}}}} {{{{.Label "{OWNER_LABEL}"}}}}'],
            capture_output=True, timeout=DOCKER_CLI_TIMEOUT_SEC, check=False
        )
    except subprocess.TimeoutExpired:
        return 0
    if listing.returncode != 0:
        return 0

    stale = []
    for line in listing.stdout.decode().splitlines():
        parts = line.split()
        if not parts:
            continue
        container_id = parts[0]
        owner = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else None
        if only_own:
            if owner == os.getpid():
                stale.append(container_id)
        elif owner is None or owner == os.getpid() or not psutil.pid_exists(owner):
            stale.append(container_id)

    if not stale:
        return 0
    try:
        subprocess.run(
            [config.docker_binary, "rm", "-f", *stale],
            capture_output=True, timeout=DOCKER_CLI_TIMEOUT_SEC, check=False
        )
    except subprocess.TimeoutExpired:
        return 0
    return len(stale)


def _sweep_processes() -> int:
    with _live_lock:
        procs = list(_live_processes.values())
        _live_processes.clear()
    for proc in procs:
        force_kill(proc)
    return len(procs)


def cleanup_sweep(
    config: EngineConfig,
    event_logger: Optional[Callable[[str, str], None]] = None,
    at_exit: bool = False
) -> Dict[str, int]:
    """
    Remove environments left behind by crashed or interrupted runs.

    Deletes stale workspaces (by name prefix and age), force-removes labelled
    containers whose owning engine process is gone (only this process's own
    containers when `at_exit`), and kills worker process groups still tracked.

    Returns:
        Counts of removed workspaces, containers and processes
    """
    counts = {
        "workspaces": _sweep_workspaces(config),
        "containers": _sweep_containers(config, only_own=at_exit),
        "processes": _sweep_processes(),
    }
    if event_logger:
        event_logger(
            "CLEANUP_SWEEP",
            f"workspaces={counts['workspaces']} containers={counts['containers']} "
            f"processes={counts['processes']}"
        )
    return counts
