#!/usr/bin/env python3
"""
run_script.py

Runs one script with LOG_LEVEL-driven progress output and exits with the
script's own status.

DEBUG execs the script so its output streams unprefixed. VERBOSE polls
every second and adds start/finish lines. Every other level polls every
five seconds. The percentages are a synthetic ramp over a nominal
60-second task: they show liveness, not real progress, and never reach
100% until the script has exited successfully.
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Sequence, TextIO

from toolbox import ChildProcess, ConfigError, LogLevel, parse_log_level


NOMINAL_TASK_SECONDS = 60
PROGRESS_CAP = 95
VERBOSE_HEARTBEAT_SECONDS = 1
DEFAULT_HEARTBEAT_SECONDS = 5


def runner_level(raw: Optional[str]) -> LogLevel:
    try:
        return parse_log_level(raw)
    except ConfigError:
        # Unknown names behave like INFORMATIONAL.
        return LogLevel.INFORMATIONAL


def heartbeat_for(level: LogLevel) -> int:
    if level == LogLevel.VERBOSE:
        return VERBOSE_HEARTBEAT_SECONDS
    return DEFAULT_HEARTBEAT_SECONDS


def progress_step(heartbeat: int) -> int:
    return 100 // (NOMINAL_TASK_SECONDS // heartbeat)


def progress_ramp(heartbeat: int) -> Iterator[int]:
    step = progress_step(heartbeat)
    percent = 0
    while True:
        percent = min(percent + step, PROGRESS_CAP)
        yield percent


def emit(tag: str, message: str, stream: Optional[TextIO] = None) -> None:
    print(f"[{tag}] {message}", file=stream or sys.stdout, flush=True)


def _spawn_quiet(command: Sequence[str]) -> ChildProcess:
    return ChildProcess.spawn(command, quiet=True)


def run_with_progress(
    script_path: str,
    script_name: str,
    level: LogLevel,
    spawn: Callable[[Sequence[str]], ChildProcess] = _spawn_quiet,
    sleep: Optional[Callable[[float], None]] = None,
    execv: Callable[[str, List[str]], Any] = os.execv,
) -> int:
    sleep = sleep or time.sleep

    try:
        if level == LogLevel.DEBUG:
            sys.stdout.flush()
            sys.stderr.flush()
            execv(script_path, [script_path])
            return 0

        heartbeat = heartbeat_for(level)
        if level == LogLevel.VERBOSE:
            emit("VERBOSE", f"{script_name}: starting")
        child = spawn([script_path])
    except FileNotFoundError:
        emit("ERROR", f"{script_name}: not found: {script_path}", sys.stderr)
        return 127
    except OSError as exc:
        emit("ERROR", f"{script_name}: cannot execute: {exc}", sys.stderr)
        return 126

    ramp = progress_ramp(heartbeat)
    while child.is_alive():
        emit("INFORMATIONAL", f"{script_name}: {next(ramp)}% complete")
        sleep(heartbeat)

    exit_code = child.wait()
    if exit_code != 0:
        emit("ERROR", f"{script_name}: failed with exit code {exit_code}", sys.stderr)
        return exit_code

    emit("INFORMATIONAL", f"{script_name}: 100% complete")
    if level == LogLevel.VERBOSE:
        emit("VERBOSE", f"{script_name}: finished")
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a script with LOG_LEVEL-driven progress output")
    parser.add_argument("script_path", help="Path of the script to execute")
    parser.add_argument("script_name", nargs="?", help="Label for output lines (default: basename)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    script_name = args.script_name or Path(args.script_path).name
    level = runner_level(os.environ.get("LOG_LEVEL"))
    return run_with_progress(args.script_path, script_name, level)


if __name__ == "__main__":
    raise SystemExit(main())
