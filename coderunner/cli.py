#!/usr/bin/env python3
"""
coderunner CLI

Operator-facing commands around the grading engine:
  execute        run a source file once against an input
  submit         grade a source file against a challenge from a catalogue
  show           print the user-facing view of a challenge
  sweep          remove workspaces/containers left by crashed runs
  sample-config  write an annotated sample configuration
"""

import argparse
import getpass
import json
import sys
from pathlib import Path
from typing import List, Optional

from .catalogue import load_catalogue
from .config_loader import create_sample_config, load_config
from .engine import GradingEngine
from .errors import ValidationError
from .event_log import EventLog
from .models import ExecuteRequest, SubmitRequest
from .registry import RUNTIMES
from .sandbox import cleanup_sweep
from .store import InMemoryChallengeRepository


def _read_text(path: str) -> str:
    with open(path, 'r', encoding='utf-8') as f:
        return f.read()


def _engine(args, challenges=None) -> GradingEngine:
    config = load_config(Path(args.config) if args.config else None)
    return GradingEngine(
        config,
        challenges=challenges,
        event_logger=EventLog(config.event_log_path),
    )


def _load_challenges(args) -> InMemoryChallengeRepository:
    catalogue_path = Path(args.catalogue)
    key = None
    password = None
    if catalogue_path.suffix.lower() != '.json':
        if args.key_file:
            key = Path(args.key_file).read_bytes().strip()
        else:
            try:
                password = getpass.getpass(f"Password for catalogue '{catalogue_path.name}': ").strip()
            except (KeyboardInterrupt, EOFError):
                raise ValueError("No password given")
    return InMemoryChallengeRepository(load_catalogue(catalogue_path, key=key, password=password))


def cmd_execute(args) -> int:
    engine = _engine(args)
    stdin = _read_text(args.input_file) if args.input_file else (args.input or "")
    response = engine.execute(ExecuteRequest(
        code=_read_text(args.file),
        language=args.language,
        input=stdin,
        time_limit_ms=args.time_limit_ms,
        memory_limit_mb=args.memory_limit_mb,
    ))
    print(json.dumps(response.to_dict(), indent=2))
    return 0 if response.status.value == "completed" else 1


def cmd_submit(args) -> int:
    engine = _engine(args, challenges=_load_challenges(args))
    response = engine.submit(args.user, SubmitRequest(
        challenge_id=args.challenge,
        code=_read_text(args.file),
        language=args.language,
    ))
    print(json.dumps(response.to_dict(), indent=2))
    return 0 if response.success else 1


def cmd_show(args) -> int:
    engine = _engine(args, challenges=_load_challenges(args))
    print(json.dumps(engine.challenge_view(args.user, args.challenge), indent=2, ensure_ascii=False))
    return 0


def cmd_sweep(args) -> int:
    config = load_config(Path(args.config) if args.config else None)
    counts = cleanup_sweep(config, EventLog(config.event_log_path))
    print(f"[OK] Removed {counts['workspaces']} workspace(s), {counts['containers']} container(s), "
          f"killed {counts['processes']} process group(s)")
    return 0


def cmd_sample_config(args) -> int:
    create_sample_config(Path(args.out))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coderunner",
        description="Code execution and challenge grading engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  coderunner execute --language python --file main.py --input "3 4"
  coderunner submit --catalogue challenges.json --challenge sum-two --language python --file main.py
  coderunner submit --catalogue challenges.enc --key-file group.key --challenge sum-two --language cpp --file main.cpp
  coderunner sweep
        """
    )
    parser.add_argument(
        "--config",
        help="Path to engine configuration file (default: config.json in the project root)"
    )
    sub = parser.add_subparsers(dest="command", required=True)
    languages = sorted(lang.value for lang in RUNTIMES)

    p = sub.add_parser("execute", help="Run a source file once")
    p.add_argument("--language", required=True, choices=languages)
    p.add_argument("--file", required=True, help="Source file to run")
    p.add_argument("--input", help="Text fed to standard input")
    p.add_argument("--input-file", help="File fed to standard input")
    p.add_argument("--time-limit-ms", type=int)
    p.add_argument("--memory-limit-mb", type=int)
    p.set_defaults(func=cmd_execute)

    for name, func, help_text in (
        ("submit", cmd_submit, "Grade a source file against a challenge"),
        ("show", cmd_show, "Show a challenge as a user sees it"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--catalogue", required=True, help="Challenge catalogue (.json or .enc)")
        p.add_argument("--key-file", help="Fernet key file for an encrypted catalogue (else prompt for password)")
        p.add_argument("--challenge", required=True, help="Challenge id")
        p.add_argument("--user", default="local", help="User id the result is recorded for")
        if name == "submit":
            p.add_argument("--language", required=True, choices=languages)
            p.add_argument("--file", required=True, help="Source file to grade")
        p.set_defaults(func=func)

    p = sub.add_parser("sweep", help="Remove leftovers of crashed runs")
    p.set_defaults(func=cmd_sweep)

    p = sub.add_parser("sample-config", help="Write a sample configuration file")
    p.add_argument("--out", default="config.sample.json")
    p.set_defaults(func=cmd_sample_config)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the coderunner CLI."""
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except ValidationError as e:
        print(f"[ERROR] {e.code.value}: {e.message}", file=sys.stderr)
        return 2
    except (ValueError, OSError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
