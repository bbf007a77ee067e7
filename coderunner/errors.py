"""
Error taxonomy for the grading engine.

Validation errors are raised before a submission exists. Policy and resource
violations are recorded on the submission itself, so only infrastructure
problems and contract violations travel as exceptions past the engine.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Machine-readable error codes surfaced at the boundary."""
    INVALID_CODE = "INVALID_CODE"
    INVALID_LANGUAGE = "INVALID_LANGUAGE"
    INVALID_CHALLENGE = "INVALID_CHALLENGE"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    EXECUTION_TIMEOUT = "EXECUTION_TIMEOUT"
    MEMORY_LIMIT_EXCEEDED = "MEMORY_LIMIT_EXCEEDED"
    SANDBOX_ERROR = "SANDBOX_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class CodeRunnerError(Exception):
    """Base class for all engine errors."""

    code: Optional[ErrorCode] = None

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(CodeRunnerError):
    """Request rejected at intake; no submission record was created."""


class CompilationError(CodeRunnerError):
    """The compile step exited non-zero. Carries the compiler output."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class SandboxError(CodeRunnerError):
    """An execution environment could not be created or driven."""

    code = ErrorCode.SANDBOX_ERROR


class ServiceUnavailableError(SandboxError):
    """No sandbox slot became free in time."""

    code = ErrorCode.SERVICE_UNAVAILABLE


class SubmissionStateError(CodeRunnerError):
    """Illegal lifecycle transition or mutation of a terminal submission."""
