#!/usr/bin/env python3
"""
keygen.py - Generate Fernet encryption keys for challenge catalogues.

Usage:
    python tools/keygen.py --out keys/GROUP1.key
    python tools/keygen.py --out keys/GROUP1.key --force   # replace an existing key

Password-protected catalogues need no key file; see build_catalogue.py --password.
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from coderunner.catalogue import write_key_file


def generate_key(output_file: str, force: bool = False) -> bool:
    """Write a new key file. Returns False if it could not be written."""
    try:
        write_key_file(output_file, overwrite=force)
    except FileExistsError as e:
        print(f"[ERROR] {e}. Catalogues encrypted with it would become unreadable; "
              f"pass --force to replace it.", file=sys.stderr)
        return False
    except OSError as e:
        print(f"[ERROR] Error writing key: {e}", file=sys.stderr)
        return False

    print(f"[OK] Encryption key written to {output_file}")
    print(f"\n[!] SECURITY: Store this key securely. Never commit to version control.")
    print(f"\n[i] Encrypt: python tools/build_catalogue.py --in challenges.json "
          f"--out challenges.enc --key-file {output_file}")
    return True


def main():
    parser = argparse.ArgumentParser(
        description="Generate a new Fernet encryption key for challenge catalogues.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Security Notes:
  - Store keys in a secure password manager
  - Never ship keys alongside encrypted catalogues
        """
    )
    parser.add_argument("--out", required=True, help="Output file path for the key")
    parser.add_argument("--force", action="store_true", help="Replace an existing key file")

    args = parser.parse_args()
    sys.exit(0 if generate_key(args.out, args.force) else 1)


if __name__ == "__main__":
    main()
