from __future__ import annotations

import os
import signal
import sys
import threading
import time

import pytest

from orbit.proc import (
    CANCELLED_RETURNCODE,
    NOT_FOUND_RETURNCODE,
    TIMEOUT_RETURNCODE,
    CommandError,
    classify_error,
    default_runner,
    run_command,
)
from orbit.provision.cancel import CancellationToken, install_signal_handlers
from tests.fakes import RecordingRunner, completed


def test_run_command_passes_cwd_env_and_timeout_to_runner(tmp_path) -> None:
    runner = RecordingRunner(lambda cmd, **kw: completed(cmd, stdout="ok\n"))

    result = run_command(
        ["composer", "install"],
        runner=runner,
        cwd=tmp_path,
        env={"HOME": "/home/u"},
        timeout=42,
        error_message="composer failed",
    )

    assert result.ok
    assert result.stdout == "ok\n"
    call = runner.calls[0]
    assert call["cwd"] == tmp_path
    assert call["env"] == {"HOME": "/home/u"}
    assert call["timeout"] == 42


def test_run_command_raises_classified_error_on_failure() -> None:
    runner = RecordingRunner(lambda cmd, **kw: completed(cmd, returncode=1, stderr="fatal: repository not found"))

    with pytest.raises(CommandError) as exc_info:
        run_command(["git", "clone", "x", "y"], runner=runner, error_message="clone failed")

    assert exc_info.value.category == "fatal"
    assert exc_info.value.detail == "fatal: repository not found"
    assert "clone failed" in str(exc_info.value)


def test_run_command_without_check_returns_failed_result() -> None:
    runner = RecordingRunner(lambda cmd, **kw: completed(cmd, returncode=2, stdout="partial"))

    result = run_command(["npm", "install"], runner=runner, error_message="npm failed", check=False)

    assert not result.ok
    assert result.output == "partial"


def test_classify_error_treats_timeouts_and_network_noise_as_retryable() -> None:
    assert classify_error(returncode=TIMEOUT_RETURNCODE, stderr="", stdout="") == "retryable"
    assert classify_error(returncode=1, stderr="Could not resolve host: github.com", stdout="") == "retryable"
    assert classify_error(returncode=1, stderr="permission denied", stdout="") == "fatal"


def test_default_runner_reports_missing_executable() -> None:
    result = default_runner(["definitely-not-an-orbit-binary"])

    assert result.returncode == NOT_FOUND_RETURNCODE
    assert "command not found" in result.stderr


def test_default_runner_stops_child_after_timeout() -> None:
    result = default_runner([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.5)

    assert result.returncode == TIMEOUT_RETURNCODE
    assert "timed out" in result.stderr


def test_default_runner_stops_child_when_cancelled() -> None:
    token = CancellationToken()
    token.cancel("Process interrupted")

    result = default_runner([sys.executable, "-c", "import time; time.sleep(30)"], cancel=token)

    assert result.returncode == CANCELLED_RETURNCODE
    assert "Process interrupted" in result.stderr


def test_default_runner_captures_output() -> None:
    result = default_runner([sys.executable, "-c", "print('hello')"], timeout=30)

    assert result.returncode == 0
    assert result.stdout.strip() == "hello"


def test_default_runner_timeout_stops_the_whole_process_tree() -> None:
    started = time.monotonic()

    result = default_runner(["sh", "-c", "sleep 20; true"], timeout=1)

    assert result.returncode == TIMEOUT_RETURNCODE
    assert time.monotonic() - started < 6


def test_default_runner_cancel_stops_the_whole_process_tree() -> None:
    token = CancellationToken()
    timer = threading.Timer(0.5, token.cancel, args=("Process terminated",))
    timer.start()
    started = time.monotonic()

    try:
        result = default_runner(["sh", "-c", "sleep 20; true"], timeout=60, cancel=token)
    finally:
        timer.cancel()

    assert result.returncode == CANCELLED_RETURNCODE
    assert time.monotonic() - started < 6


def test_signal_handlers_cancel_token_and_restore_previous_handler() -> None:
    previous = signal.getsignal(signal.SIGTERM)
    token = CancellationToken()
    restore = install_signal_handlers(token)
    try:
        os.kill(os.getpid(), signal.SIGTERM)
        deadline = time.monotonic() + 5
        while not token.cancelled and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        restore()

    assert token.reason == "Process terminated"
    assert signal.getsignal(signal.SIGTERM) is previous
