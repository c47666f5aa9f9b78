#!/usr/bin/env python3
"""Run all linting, formatting, and testing checks.

Runs isort, black and pytest in sequence from the project root.

Usage:
    python scripts/lint_all.py [--check] [--skip-tests]

Options:
    --check: Only check formatting (don't modify files)
    --skip-tests: Skip running pytest
"""

import argparse
import subprocess
import sys
from pathlib import Path
from typing import List

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent

# Directories formatted and sorted
LINT_TARGETS = ["tastematch", "tests", "scripts"]


def run_command(cmd: List[str], description: str) -> bool:
    """Run a command and return True if successful.

    Args:
        cmd: Command to run as list of strings
        description: Human-readable description of what's being run

    Returns:
        True if command succeeded (exit code 0), False otherwise
    """
    print(f"\n{'=' * 60}")
    print(f"Running: {description}")
    print(f"Command: {' '.join(cmd)}")
    print(f"{'=' * 60}\n")

    try:
        result = subprocess.run(cmd, cwd=PROJECT_ROOT, check=False)
    except FileNotFoundError as e:
        print(f"\n✗ Error: {e}")
        print("  Make sure the command is installed and in your PATH\n")
        return False

    if result.returncode == 0:
        print(f"\n✓ {description} passed\n")
        return True
    print(f"\n✗ {description} failed (exit code: {result.returncode})\n")
    return False


def run_formatter(name: str, check_args: List[str], check_mode: bool) -> bool:
    """Check a formatter, then let it fix the tree unless in check mode."""
    if run_command([name, *LINT_TARGETS, *check_args], f"{name} (check)"):
        return True
    if check_mode:
        return False
    print(f"Attempting to auto-fix with {name}...")
    return run_command([name, *LINT_TARGETS], f"{name} (auto-fix)")


def main() -> int:
    """Main entry point for linting script.

    Returns:
        Exit code: 0 if all checks passed, 1 otherwise
    """
    parser = argparse.ArgumentParser(description="Run linting, formatting, and testing checks")
    parser.add_argument("--check", action="store_true", help="Only check formatting (don't modify files)")
    parser.add_argument("--skip-tests", action="store_true", help="Skip running pytest")
    args = parser.parse_args()

    print("\n" + "=" * 60)
    print("TasteMatch Code Quality Checks")
    print("=" * 60)

    all_passed = run_formatter("isort", ["--check-only", "--diff"], args.check)
    all_passed = run_formatter("black", ["--check"], args.check) and all_passed

    if not args.skip_tests:
        all_passed = run_command(["pytest", "tests/", "-v"], "pytest (tests)") and all_passed

    print("\n" + "=" * 60)
    if all_passed:
        print("✓ All checks passed!")
    else:
        print("✗ Some checks failed. Please fix the issues above.")
    print("=" * 60 + "\n")
    return 0 if all_passed else 1


if __name__ == "__main__":
    sys.exit(main())
