#!/usr/bin/env python3
"""Fake interactive CLI for PTY integration testing.

Prints a banner, then answers every line typed into its terminal with
``Task completed: <line>``. Ctrl+C ends it with exit code 130 unless
FAKE_CLI_IGNORE_SIGINT=1 is set. FAKE_CLI_IGNORE_SIGTERM=1 leaves SIGKILL
as the only way to stop it.

Usage:
    python fake_cli.py [--version] [any claude-style flags...]
"""

from __future__ import annotations

import argparse
import os
import signal
import sys


def main() -> int:
    parser = argparse.ArgumentParser(description="Fake CLI for testing")
    parser.add_argument("--version", action="store_true")
    args, _unknown = parser.parse_known_args()

    if args.version:
        print("9.9.9 (fake)", flush=True)
        return 0

    if os.environ.get("FAKE_CLI_IGNORE_SIGINT") == "1":
        signal.signal(signal.SIGINT, signal.SIG_IGN)
    if os.environ.get("FAKE_CLI_IGNORE_SIGTERM") == "1":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    print("Welcome to Claude Code (fake)", flush=True)
    try:
        for line in sys.stdin:
            line = line.strip()
            if not line:
                continue
            if line == "fail":
                print("Error: simulated failure", flush=True)
            else:
                print(f"Task completed: {line}", flush=True)
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
