#!/usr/bin/env python3
"""
build_catalogue.py - Validate and encrypt a plaintext JSON challenge catalogue.

    python tools/build_catalogue.py --in challenges.json --out catalogues/challenges.enc --key-file GROUP1.key
    python tools/build_catalogue.py --in challenges.json --out catalogues/challenges.enc --password
"""

import argparse
import getpass
import hashlib
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from coderunner.catalogue import encrypt_catalogue, parse_catalogue

MIN_PASSWORD_LENGTH = 8


def prompt_password() -> str:
    """Ask for the catalogue password twice. Raises ValueError if unusable."""
    first = getpass.getpass("Catalogue password: ")
    if len(first) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if getpass.getpass("Repeat password: ") != first:
        raise ValueError("Passwords do not match")
    return first


def build_catalogue(in_file: str, out_file: str, key_file: str = None, use_password: bool = False) -> dict:
    """
    Encrypt in_file into out_file.

    The catalogue is parsed with the same rules the engine loads it with, so
    nothing that would fail to load is ever written.

    Returns:
        Summary with challenge counts, output size and SHA256 of the output
    Raises:
        ValueError: Bad secret, invalid JSON or invalid catalogue
        OSError: Input or key file could not be read, or output not written
    """
    if use_password == bool(key_file):
        raise ValueError("Exactly one of a key file or a password is required")

    raw = Path(in_file).read_bytes()
    try:
        document = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"{in_file} is not valid JSON: {e}")
    challenges = parse_catalogue(document)

    if use_password:
        blob = encrypt_catalogue(document, password=prompt_password())
    else:
        blob = encrypt_catalogue(document, key=Path(key_file).read_bytes().strip())

    out = Path(out_file)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(blob)

    return {
        "challenges": len(challenges),
        "published": sum(1 for c in challenges if c.is_published),
        "test_cases": sum(len(c.test_cases) for c in challenges),
        "input_bytes": len(raw),
        "output_bytes": len(blob),
        "sha256": hashlib.sha256(blob).hexdigest(),
    }


def main():
    parser = argparse.ArgumentParser(
        description="Validate and encrypt a challenge catalogue for the grading engine.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
The input must be {"challenges": [...]} or a bare list of challenges.
Verify the result with tools/verify_catalogue.py before publishing it.
        """
    )
    parser.add_argument("--in", dest="in_file", required=True, help="Plaintext catalogue (.json)")
    parser.add_argument("--out", required=True, help="Encrypted catalogue to write (.enc)")
    secret = parser.add_mutually_exclusive_group(required=True)
    secret.add_argument("--key-file", help="Fernet key file from tools/keygen.py")
    secret.add_argument("--password", action="store_true", help="Prompt for a password instead")
    args = parser.parse_args()

    try:
        summary = build_catalogue(args.in_file, args.out, args.key_file, args.password)
    except (OSError, ValueError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(1)

    print(f"[OK] {args.out}: {summary['challenges']} challenges "
          f"({summary['published']} published), {summary['test_cases']} test cases")
    print(f"  {summary['input_bytes']} -> {summary['output_bytes']} bytes, "
          f"{'password' if args.password else 'key file'} encryption")
    print(f"  SHA256: {summary['sha256']}")


if __name__ == "__main__":
    main()
