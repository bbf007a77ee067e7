"""
Configuration loader for host-level engine parameters.

Handles loading and validating engine configuration files.
"""

import json
from pathlib import Path
from typing import Optional

from .models import EngineConfig

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config.json"


def load_config(config_path: Optional[Path] = None) -> EngineConfig:
    """
    Load engine configuration from a JSON file.

    Args:
        config_path: Path to the configuration file. If None, looks for
                    'config.json' in the project root.

    Returns:
        EngineConfig object with validated configuration

    Raises:
        ValueError: If config is invalid
    """
    config_path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        print(f"Warning: Config file '{config_path}' not found. Using default configuration.")
        return EngineConfig.default()

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}")
    except OSError as e:
        raise ValueError(f"Error reading config file: {e}")

    if not isinstance(data, dict):
        raise ValueError("Invalid configuration: top level must be a JSON object")

    try:
        config = EngineConfig.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid configuration value: {e}")

    is_valid, error_message = config.validate()
    if not is_valid:
        raise ValueError(f"Invalid configuration: {error_message}")

    return config


def create_sample_config(output_path: Path):
    """
    Create a sample configuration file for operators.

    Args:
        output_path: Path where to save the sample config
    """
    defaults = EngineConfig.default()
    sample_config = {
        "max_concurrent_sandboxes": defaults.max_concurrent_sandboxes,
        "case_parallelism": 1,
        "submission_time_budget_ms": 60000,
        "compile_timeout_ms": 30000,
        "queue_timeout_s": 120,
        "max_output_bytes": 65536,
        "memory_poll_interval_ms": 50,
        "workspace_root": None,
        "docker_binary": "docker",
        "stale_workspace_age_s": 3600,
        "event_log_path": "coderunner-events.log",
        "_comment": "This is a sample engine configuration. Adjust values as needed.",
        "_instructions": {
            "max_concurrent_sandboxes": "Sandboxes allowed to run at once on this host; extra runs queue",
            "case_parallelism": "Test cases of one submission run concurrently (1 = sequential)",
            "submission_time_budget_ms": "Wall-clock budget for all test cases of one submission",
            "compile_timeout_ms": "Time allowed for a compile step (TypeScript, Java, C++)",
            "queue_timeout_s": "How long a run may wait for a free sandbox slot before SERVICE_UNAVAILABLE",
            "max_output_bytes": "Captured stdout/stderr is truncated to this many bytes",
            "memory_poll_interval_ms": "Sampling period of the worker memory watchdog",
            "workspace_root": "Parent directory of ephemeral workspaces (null = system temp dir)",
            "docker_binary": "Docker CLI used for container isolation",
            "stale_workspace_age_s": "Workspaces older than this are removed by the cleanup sweep",
            "event_log_path": "File receiving operator event lines (null = in memory only)"
        }
    }

    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(sample_config, f, indent=2)

    print(f"Sample configuration created at: {output_path}")
