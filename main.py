#!/usr/bin/env python3
"""
Entry point wrapper for running the CLI from a source checkout.

Uses absolute imports so the package resolves without installation.
"""

import sys
import os

# Add the project directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

if __name__ == "__main__":
    from coderunner.cli import main
    sys.exit(main())
