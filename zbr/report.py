"""Console progress output shared by the job phases."""
from __future__ import annotations

import os
import sys

# ANSI color codes (respect NO_COLOR convention: https://no-color.org)
if os.environ.get("NO_COLOR") is not None:
    GREEN = RED = YELLOW = RESET = ""
else:
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    RESET = "\033[0m"


def banner(title: str) -> None:
    print(f"\n{'='*60}")
    print(title)


def step(message: str) -> None:
    print(f"  {message}")


def ok(message: str) -> None:
    print(f"  {GREEN}{message}{RESET}")


def error(message: str) -> None:
    print(f"  {RED}ERROR{RESET} {message}", file=sys.stderr)
