"""
Resource governance for sandboxed runs.

Every run is timed against a wall-clock limit and, where the isolation kind
allows it, watched for memory. Runs that exceed either ceiling are killed
outright; there is no graceful shutdown path into user code. The governor also
owns the host-wide bound on concurrently running sandboxes. Output is drained
while a run is in progress and kept only up to a byte cap per stream.
"""

import os
import platform
import signal
import subprocess
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional

import psutil

from .errors import ServiceUnavailableError
from .registry import SecurityPolicy
from .security import ExecutionAborted


@dataclass(frozen=True)
class ResourceLimits:
    """Effective ceilings for a single run."""
    time_limit_ms: int
    memory_limit_mb: int

    @property
    def timeout_sec(self) -> float:
        return self.time_limit_ms / 1000.0


def _tightest(ceiling: int, overrides: Iterable[Optional[int]]) -> int:
    values = [ceiling] + [v for v in overrides if v is not None and v > 0]
    return min(values)


def resolve_limits(
    policy: SecurityPolicy,
    time_limits_ms: Iterable[Optional[int]] = (),
    memory_limits_mb: Iterable[Optional[int]] = ()
) -> ResourceLimits:
    """
    Combine the policy ceilings with challenge/test case overrides.

    An override can only tighten a ceiling: the smallest positive value wins.
    Missing (None) or non-positive overrides are ignored.
    """
    return ResourceLimits(
        time_limit_ms=_tightest(policy.max_execution_time_ms, time_limits_ms),
        memory_limit_mb=_tightest(policy.max_memory_mb, memory_limits_mb),
    )


class ExecutionTimeout(ExecutionAborted):
    pass


class Deadline:
    """Wall-clock deadline started at construction."""

    def __init__(self, seconds: float):
        self.started = time.perf_counter()
        self.expires_at = self.started + seconds

    def expired(self) -> bool:
        return time.perf_counter() >= self.expires_at

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.perf_counter())

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000


@dataclass
class SupervisedRun:
    """What the governor observed about one supervised process."""
    returncode: Optional[int]
    stdout: bytes
    stderr: bytes
    elapsed_ms: float
    peak_memory_mb: Optional[float]
    timed_out: bool
    memory_exceeded: bool


def force_kill(proc: subprocess.Popen):
    """SIGKILL the process and, on POSIX, its whole session/process group."""
    if platform.system() != "Windows":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    try:
        proc.kill()
    except ProcessLookupError:
        pass


def _tree_rss_bytes(root: psutil.Process) -> int:
    total = root.memory_info().rss
    for child in root.children(recursive=True):
        try:
            total += child.memory_info().rss
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            continue
    return total


DEFAULT_MAX_OUTPUT_BYTES = 64 * 1024
_READ_CHUNK = 64 * 1024
_DRAIN_TIMEOUT_SEC = 2.0


class _PipeReader(threading.Thread):
    """Drains one pipe to EOF, keeping only its first max_bytes."""

    def __init__(self, pipe, max_bytes: int):
        super().__init__(daemon=True)
        self.pipe = pipe
        self.max_bytes = max_bytes
        self.total = 0
        self._chunks = []
        self._kept = 0

    @property
    def truncated(self) -> bool:
        return self.total > self._kept

    def run(self):
        fd = self.pipe.fileno()
        while True:
            chunk = os.read(fd, _READ_CHUNK)
            if not chunk:
                break
            self.total += len(chunk)
            room = self.max_bytes - self._kept
            if room > 0:
                kept = chunk[:room]
                self._chunks.append(kept)
                self._kept += len(kept)
        self.pipe.close()

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)


def _feed(pipe, data: bytes):
    try:
        if data:
            pipe.write(data)
    except BrokenPipeError:
        # The program exited without reading all of its input.
        pass
    finally:
        try:
            pipe.close()
        except BrokenPipeError:
            pass


class ResourceGovernor:
    """Enforces time and memory ceilings and bounds sandbox concurrency."""

    def __init__(
        self,
        max_concurrent: int,
        queue_timeout_s: float = 120.0,
        poll_interval_ms: int = 50,
        event_logger: Optional[Callable[[str, str], None]] = None
    ):
        self.max_concurrent = max_concurrent
        self.queue_timeout_s = queue_timeout_s
        self.poll_interval = poll_interval_ms / 1000.0
        self.event_logger = event_logger
        self._slots = threading.BoundedSemaphore(max_concurrent)

    def _log(self, event: str, details: str = ""):
        if self.event_logger:
            self.event_logger(event, details)

    @contextmanager
    def slot(self) -> Iterator[None]:
        """
        Hold one of the host's sandbox slots for the duration of a run.

        Callers beyond the bound wait (backpressure). A caller that cannot get
        a slot within queue_timeout_s gets ServiceUnavailableError.
        """
        if not self._slots.acquire(timeout=self.queue_timeout_s):
            self._log("SANDBOX_QUEUE_TIMEOUT", f"No free slot after {self.queue_timeout_s}s")
            raise ServiceUnavailableError(
                f"No sandbox slot became available within {self.queue_timeout_s} seconds"
            )
        try:
            yield
        finally:
            self._slots.release()

    def deadline(self, limits: ResourceLimits) -> Deadline:
        return Deadline(limits.timeout_sec)

    def supervise(
        self,
        proc: subprocess.Popen,
        stdin: bytes,
        limits: ResourceLimits,
        kill: Optional[Callable[[], None]] = None,
        watch_memory: bool = True,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    ) -> SupervisedRun:
        """
        Feed stdin to a started process and wait for it under the limits.

        stdout and stderr are drained while the process runs; at most
        max_output_bytes of each is kept and the rest is discarded, so a
        program printing without end costs the host no more than the cap.

        Args:
            proc: Process started with stdin/stdout/stderr pipes
            stdin: Bytes written to the process's standard input
            limits: Time and memory ceilings
            kill: How to forcibly terminate the environment (default: SIGKILL the process group)
            watch_memory: Whether to sample process-tree RSS against the memory ceiling
            max_output_bytes: Bytes of stdout and of stderr kept

        Returns:
            SupervisedRun with captured output and which ceiling (if any) fired
        """
        kill = kill or (lambda: force_kill(proc))
        deadline = self.deadline(limits)

        memory_exceeded = threading.Event()
        stop = threading.Event()
        peak = [0.0]
        watchdog = None
        if watch_memory:
            watchdog = threading.Thread(
                target=self._watch_memory,
                args=(proc.pid, limits.memory_limit_mb, peak, memory_exceeded, stop, kill),
                daemon=True
            )
            watchdog.start()

        stdout = _PipeReader(proc.stdout, max_output_bytes)
        stderr = _PipeReader(proc.stderr, max_output_bytes)
        feeder = threading.Thread(target=_feed, args=(proc.stdin, stdin), daemon=True)
        for thread in (stdout, stderr, feeder):
            thread.start()

        timed_out = False
        try:
            proc.wait(timeout=limits.timeout_sec)
        except subprocess.TimeoutExpired:
            timed_out = True
            kill()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        finally:
            stop.set()
            if watchdog is not None:
                watchdog.join(timeout=1.0)

        # A descendant that escaped the process group may still hold the pipes open.
        for reader in (stdout, stderr):
            reader.join(timeout=_DRAIN_TIMEOUT_SEC)
        if stdout.truncated or stderr.truncated:
            self._log("OUTPUT_TRUNCATED", f"pid {proc.pid} stdout={stdout.total} stderr={stderr.total} bytes")

        exceeded = memory_exceeded.is_set()
        return SupervisedRun(
            returncode=proc.returncode,
            stdout=stdout.getvalue(),
            stderr=stderr.getvalue(),
            elapsed_ms=deadline.elapsed_ms(),
            peak_memory_mb=round(peak[0], 2) if watch_memory else None,
            timed_out=timed_out and not exceeded,
            memory_exceeded=exceeded,
        )

    def _watch_memory(self, pid, limit_mb, peak, exceeded, stop, kill):
        """Background memory sampling loop; kills the run on breach."""
        try:
            root = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return

        while not stop.is_set():
            try:
                used_mb = _tree_rss_bytes(root) / (1024 * 1024)
            except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
                return
            peak[0] = max(peak[0], used_mb)
            if used_mb > limit_mb:
                exceeded.set()
                kill()
                self._log("MEMORY_LIMIT_KILL", f"pid {pid} used {used_mb:.1f} MB > {limit_mb} MB")
                return
            stop.wait(self.poll_interval)
