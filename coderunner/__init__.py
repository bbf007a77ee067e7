"""
coderunner - code execution and challenge grading engine.

Modules:
- models: Challenge/TestCase/result data structures and engine configuration
- registry: per-language runtime and security policy tables
- security: static source scan and runtime interception
- governor: time/memory limits, watchdog and host concurrency bound
- interpreter: managed interpreter for Python, run in a worker child
- sandbox: isolation strategies (restricted, worker, container) and cleanup sweep
- runner: per-test-case execution and output comparison
- grader: score, terminal status, feedback and rewards
- submission: submission lifecycle state machine
- engine: intake, orchestration and response assembly
- store: collaborator interfaces and in-memory implementations
- catalogue: challenge catalogue loading (plain or encrypted)
- progress: experience, coins and levels
- event_log: operator event log
- config_loader: engine configuration loading
"""

__version__ = "1.0.0"
