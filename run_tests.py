#!/usr/bin/env python3
"""
Test runner for prompt telemetry

    ./run_tests.py                     # whole suite
    ./run_tests.py -m log_monitor -v   # tests/test_log_monitor.py only
    ./run_tests.py --coverage --html   # coverage report in htmlcov/
"""

import os
import sys
import argparse
import subprocess
from pathlib import Path


def find_python():
    """Prefer the project's .venv interpreter when not already inside a virtualenv"""
    if sys.base_prefix != sys.prefix:
        return sys.executable
    bin_dir = "Scripts" if os.name == "nt" else "bin"
    candidate = Path(".venv") / bin_dir / ("python.exe" if os.name == "nt" else "python")
    return str(candidate) if candidate.exists() else sys.executable


def build_pytest_args(args):
    cmd = ["-m", "pytest"]
    if args.verbose:
        cmd += ["-v", "-s"]
    if args.keyword:
        cmd += ["-k", args.keyword]
    if args.module:
        cmd.append(f"tests/test_{args.module}.py")
    if args.coverage:
        cmd += ["--cov=prompt_telemetry", "--cov-report=term-missing"]
        if args.html:
            cmd.append("--cov-report=html:htmlcov")
    return cmd


def main():
    parser = argparse.ArgumentParser(description="Run the prompt telemetry test suite")
    parser.add_argument("--coverage", action="store_true", help="Measure coverage of prompt_telemetry")
    parser.add_argument("--html", action="store_true", help="Also write an HTML coverage report")
    parser.add_argument("--verbose", "-v", action="store_true")
    parser.add_argument("--module", "-m", help="Module under test, e.g. issue_detector")
    parser.add_argument("--keyword", "-k", help="pytest -k expression")
    args = parser.parse_args()

    cmd = [find_python()] + build_pytest_args(args)
    print("Running:", " ".join(cmd))
    returncode = subprocess.call(cmd)

    if returncode != 0:
        print(f"\nTests failed (exit code {returncode})")
        sys.exit(returncode)

    if args.coverage and args.html:
        print(f"\nCoverage report: {Path('htmlcov/index.html').absolute()}")
    print("\nAll tests passed")


if __name__ == "__main__":
    main()
