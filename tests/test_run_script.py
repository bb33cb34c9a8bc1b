from __future__ import annotations

import re
import time
from pathlib import Path
from typing import List, Sequence, Tuple

import pytest

import run_script
from toolbox import LogLevel

PERCENT_RE = re.compile(r"^\[INFORMATIONAL\] (?P<name>\S+): (?P<percent>\d+)% complete$")

_real_sleep = time.sleep


def _write_script(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")
    path.chmod(0o755)
    return path


def _quick_sleep(_seconds: float) -> None:
    _real_sleep(0.02)


def _percentages(output: str) -> List[int]:
    values = []
    for line in output.splitlines():
        match = PERCENT_RE.match(line)
        if match:
            values.append(int(match.group("percent")))
    return values


class ScriptedChild:
    """Stays alive for a fixed number of polls, then exits with a code."""

    def __init__(self, polls_alive: int, exit_code: int) -> None:
        self.remaining = polls_alive
        self.exit_code = exit_code

    def is_alive(self) -> bool:
        if self.remaining > 0:
            self.remaining -= 1
            return True
        return False

    def wait(self) -> int:
        return self.exit_code


def test_progress_step_matches_heartbeat() -> None:
    assert run_script.progress_step(5) == 8
    assert run_script.progress_step(1) == 1


def test_progress_ramp_is_clamped_and_non_decreasing() -> None:
    ramp = run_script.progress_ramp(5)
    values = [next(ramp) for _ in range(20)]
    assert values[:3] == [8, 16, 24]
    assert max(values) == 95
    assert values == sorted(values)
    assert values[-1] == 95


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, LogLevel.INFORMATIONAL),
        ("info", LogLevel.INFORMATIONAL),
        ("Warning", LogLevel.WARN),
        ("verbose", LogLevel.VERBOSE),
        ("DEBUG", LogLevel.DEBUG),
        ("loud", LogLevel.INFORMATIONAL),
    ],
)
def test_runner_level(raw: str, expected: LogLevel) -> None:
    assert run_script.runner_level(raw) is expected


def test_heartbeat_for_levels() -> None:
    assert run_script.heartbeat_for(LogLevel.VERBOSE) == 1
    for level in (LogLevel.INFORMATIONAL, LogLevel.WARN, LogLevel.ERROR):
        assert run_script.heartbeat_for(level) == 5


def test_never_reports_100_while_alive(capfd: pytest.CaptureFixture[str]) -> None:
    sleeps: List[float] = []
    exit_code = run_script.run_with_progress(
        "/scripts/long.sh",
        "long.sh",
        LogLevel.INFORMATIONAL,
        spawn=lambda _command: ScriptedChild(polls_alive=30, exit_code=0),
        sleep=sleeps.append,
    )
    out = capfd.readouterr().out
    percents = _percentages(out)
    assert exit_code == 0
    assert len(percents) == 31
    assert all(value <= 95 for value in percents[:-1])
    assert percents[-1] == 100
    assert percents == sorted(percents)
    assert sleeps == [5] * 30
    assert "[VERBOSE]" not in out


def test_success_with_real_script(tmp_path: Path, capfd: pytest.CaptureFixture[str]) -> None:
    script = _write_script(tmp_path / "ok.sh", "#!/bin/sh\necho secret-output\nsleep 0.2\nexit 0\n")
    exit_code = run_script.run_with_progress(str(script), "ok.sh", LogLevel.INFORMATIONAL, sleep=_quick_sleep)
    captured = capfd.readouterr()
    assert exit_code == 0
    assert captured.out.splitlines()[-1] == "[INFORMATIONAL] ok.sh: 100% complete"
    assert "secret-output" not in captured.out
    assert "secret-output" not in captured.err


def test_verbose_adds_start_and_finish(tmp_path: Path, capfd: pytest.CaptureFixture[str]) -> None:
    script = _write_script(tmp_path / "v.sh", "#!/bin/sh\nsleep 0.1\n")
    sleeps: List[float] = []

    def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        _quick_sleep(seconds)

    assert run_script.run_with_progress(str(script), "v.sh", LogLevel.VERBOSE, sleep=record_sleep) == 0
    lines = capfd.readouterr().out.splitlines()
    assert lines[0] == "[VERBOSE] v.sh: starting"
    assert lines[-2] == "[INFORMATIONAL] v.sh: 100% complete"
    assert lines[-1] == "[VERBOSE] v.sh: finished"
    assert all(seconds == 1 for seconds in sleeps)


def test_failure_keeps_exit_code(tmp_path: Path, capfd: pytest.CaptureFixture[str]) -> None:
    script = _write_script(tmp_path / "bad.sh", "#!/bin/sh\nexit 3\n")
    exit_code = run_script.run_with_progress(str(script), "bad.sh", LogLevel.VERBOSE, sleep=_quick_sleep)
    captured = capfd.readouterr()
    assert exit_code == 3
    assert "[ERROR] bad.sh: failed with exit code 3" in captured.err
    assert "100% complete" not in captured.out
    assert "finished" not in captured.out


def test_debug_execs_script_directly() -> None:
    calls: List[Tuple[str, List[str]]] = []

    def fake_spawn(_command: Sequence[str]) -> ScriptedChild:
        raise AssertionError("DEBUG must not poll")

    exit_code = run_script.run_with_progress(
        "/scripts/a.sh",
        "a.sh",
        LogLevel.DEBUG,
        spawn=fake_spawn,
        execv=lambda path, args: calls.append((path, args)),
    )
    assert exit_code == 0
    assert calls == [("/scripts/a.sh", ["/scripts/a.sh"])]


def test_missing_script_reports_127(tmp_path: Path, capfd: pytest.CaptureFixture[str]) -> None:
    missing = tmp_path / "gone.sh"
    assert run_script.run_with_progress(str(missing), "gone.sh", LogLevel.INFORMATIONAL) == 127
    assert "[ERROR] gone.sh: not found" in capfd.readouterr().err


def test_script_without_interpreter_reports_126(tmp_path: Path, capfd: pytest.CaptureFixture[str]) -> None:
    script = _write_script(tmp_path / "bare.sh", "echo no shebang\n")
    assert run_script.run_with_progress(str(script), "bare.sh", LogLevel.INFORMATIONAL) == 126
    assert "[ERROR] bare.sh: cannot execute" in capfd.readouterr().err


def test_main_defaults_name_to_basename(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capfd: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("LOG_LEVEL", "error")
    monkeypatch.setattr(run_script.time, "sleep", _quick_sleep)
    script = _write_script(tmp_path / "nightly.sh", "#!/bin/sh\nsleep 0.1\n")
    assert run_script.main([str(script)]) == 0
    assert "[INFORMATIONAL] nightly.sh: 100% complete" in capfd.readouterr().out


def test_main_uses_given_name(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capfd: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("LOG_LEVEL", "info")
    monkeypatch.setattr(run_script.time, "sleep", _quick_sleep)
    script = _write_script(tmp_path / "x.sh", "#!/bin/sh\nexit 2\n")
    assert run_script.main([str(script), "backup"]) == 2
    assert "[ERROR] backup: failed with exit code 2" in capfd.readouterr().err
