#!/usr/bin/env python3
"""
verify_catalogue.py - Validate a challenge catalogue and grade its reference solutions.

Every reference solution is submitted against its own challenge; a solution
that does not score 100 means the challenge's expected outputs (or the
solution) are wrong.

    python tools/verify_catalogue.py --catalogue catalogues/challenges.enc --key-file GROUP1.key
    python tools/verify_catalogue.py --catalogue catalogues/challenges.enc --password
    python tools/verify_catalogue.py --catalogue challenges.json --skip-solutions
"""

import argparse
import getpass
import sys
from dataclasses import replace
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from coderunner.catalogue import load_catalogue
from coderunner.engine import GradingEngine
from coderunner.errors import ValidationError
from coderunner.models import EngineConfig, SubmitRequest
from coderunner.store import InMemoryChallengeRepository


def verify_solutions(challenges, languages=None, verbose: bool = False) -> list:
    """
    Grade each reference solution against its challenge.

    Returns:
        List of failure messages (empty if every solution scored 100)
    """
    # Unpublished challenges are verified too.
    repository = InMemoryChallengeRepository(replace(c, is_published=True) for c in challenges)
    engine = GradingEngine(EngineConfig.default(), challenges=repository, sweep_on_start=False)

    failures = []
    for challenge in challenges:
        for language, code in challenge.solutions.items():
            if languages and language.value not in languages:
                continue
            try:
                response = engine.submit("verify", SubmitRequest(challenge.id, code, language.value))
            except ValidationError as e:
                failures.append(f"{challenge.id} [{language.value}]: {e.message}")
                continue

            if response.score != 100:
                failures.append(
                    f"{challenge.id} [{language.value}]: {response.status.value}, "
                    f"score {response.score} - {response.feedback}"
                )
            elif verbose:
                print(f"  [OK] {challenge.id} [{language.value}] ({response.execution_time_ms} ms)")
    return failures


def verify_catalogue(catalogue_file: str, key_file: str = None, use_password: bool = False,
                     check_solutions: bool = True, languages=None, verbose: bool = False) -> bool:
    """
    Verify a catalogue (encrypted or plaintext).
    Returns True if valid, False otherwise.
    """
    key = None
    password = None
    if not catalogue_file.endswith('.json'):
        if use_password:
            password = getpass.getpass("Enter decryption password: ")
        elif key_file:
            key = Path(key_file).read_bytes().strip()
        else:
            print("[ERROR] Encrypted catalogue requires --key-file or --password", file=sys.stderr)
            return False

    print(f"\n[SCHEMA] Catalogue Schema Validation")
    print(f"{'='*60}")
    try:
        challenges = load_catalogue(catalogue_file, key=key, password=password)
    except FileNotFoundError as e:
        print(f"[ERROR] File not found: {e}", file=sys.stderr)
        return False
    except ValueError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return False

    warnings = []
    for challenge in challenges:
        if not challenge.test_cases:
            warnings.append(f"{challenge.id}: no test cases (cannot be submitted)")
        if not challenge.solutions:
            warnings.append(f"{challenge.id}: no reference solution")
        if verbose:
            print(f"  [OK] {challenge.id}: {challenge.title} ({len(challenge.test_cases)} tests)")

    print(f"[OK] {len(challenges)} challenge(s), "
          f"{sum(len(c.test_cases) for c in challenges)} test case(s)")

    failures = []
    if check_solutions:
        print(f"\n[SOLUTIONS] Grading reference solutions")
        print(f"{'='*60}")
        failures = verify_solutions(challenges, languages, verbose)

    print(f"\n{'='*60}")
    _report("WARNING", warnings, limit=10)
    _report("ERROR", failures, limit=20)
    if failures:
        return False

    print(f"\n[OK] Catalogue validation PASSED")
    return True


def _report(tag: str, messages: list, limit: int) -> None:
    if not messages:
        return
    print(f"\n[{tag}] {len(messages)} issue(s):")
    for message in messages[:limit]:
        print(f"  - {message}")
    hidden = len(messages) - limit
    if hidden > 0:
        print(f"  ({hidden} not shown)")


def main():
    parser = argparse.ArgumentParser(
        description="Validate a challenge catalogue and grade its reference solutions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--catalogue", required=True, help="Catalogue file (.json or .enc)")
    parser.add_argument("--key-file", help="File containing the decryption key")
    parser.add_argument("--password", action="store_true", help="Prompt for the decryption password")
    parser.add_argument("--skip-solutions", action="store_true", help="Only validate the schema")
    parser.add_argument("--language", action="append", dest="languages",
                        help="Only grade solutions in this language (repeatable)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show every challenge")

    args = parser.parse_args()
    ok = verify_catalogue(
        args.catalogue,
        key_file=args.key_file,
        use_password=args.password,
        check_solutions=not args.skip_solutions,
        languages=args.languages,
        verbose=args.verbose,
    )
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
