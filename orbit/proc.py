from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import signal
import subprocess
import time
from typing import TYPE_CHECKING, Callable, Literal, Mapping

if TYPE_CHECKING:
    from orbit.provision.cancel import CancellationToken

logger = logging.getLogger(__name__)

ErrorCategory = Literal["retryable", "fatal"]
CommandRunner = Callable[..., subprocess.CompletedProcess[str]]

TIMEOUT_RETURNCODE = 124
NOT_FOUND_RETURNCODE = 127
CANCELLED_RETURNCODE = 130

_POLL_INTERVAL = 0.25
_TERMINATE_GRACE = 5.0

_RETRYABLE_PATTERNS = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection refused",
    "connection reset",
    "could not resolve host",
    "tls handshake timeout",
    "unable to connect",
    "too many requests",
    "rate limit",
)


@dataclass(frozen=True)
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def timed_out(self) -> bool:
        return self.returncode == TIMEOUT_RETURNCODE

    @property
    def output(self) -> str:
        return self.stderr.strip() or self.stdout.strip()


class CommandError(RuntimeError):
    def __init__(
        self,
        *,
        message: str,
        result: CommandResult,
        category: ErrorCategory,
    ) -> None:
        self.message = message
        self.result = result
        self.category = category
        super().__init__(self._build_message(message))

    @property
    def retryable(self) -> bool:
        return self.category == "retryable"

    @property
    def detail(self) -> str:
        detail = self.result.output
        if len(detail) > 500:
            detail = f"{detail[:497]}..."
        return detail

    def _build_message(self, message: str) -> str:
        cmd = " ".join(self.result.command)
        return (
            f"{message} (category={self.category}, returncode={self.result.returncode}, "
            f"command={cmd!r}, detail={self.detail!r})"
        )


def _signal_group(process: subprocess.Popen, signum: int) -> None:
    try:
        os.killpg(process.pid, signum)
    except ProcessLookupError:
        pass


def _stop(process: subprocess.Popen) -> str:
    """Terminate the child's whole process group and return what it wrote to stdout.

    Helpers forked by package managers or artisan inherit the pipes and keep
    ``communicate`` waiting until they exit. Every wait here is bounded.
    """
    for signum in (signal.SIGTERM, signal.SIGKILL):
        _signal_group(process, signum)
        try:
            stdout, _ = process.communicate(timeout=_TERMINATE_GRACE)
            return stdout or ""
        except subprocess.TimeoutExpired:
            continue

    # a descendant that left the group still holds the pipes
    logger.warning("Pipes of %s still open after SIGKILL; abandoning output", process.pid)
    for stream in (process.stdout, process.stderr):
        if stream is not None:
            stream.close()
    process.wait(timeout=_TERMINATE_GRACE)
    return ""


def default_runner(
    command: list[str],
    *,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    cancel: CancellationToken | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run ``command`` as an argument vector, never through a shell.

    The child leads its own session and is polled, so a cancelled token or an
    expired timeout stops it and everything it spawned promptly. Both cases are reported as a non-zero return code rather than
    raised, so callers treat them like any other failed command.
    """
    try:
        process = subprocess.Popen(
            command,
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
    except FileNotFoundError:
        return subprocess.CompletedProcess(
            args=command, returncode=NOT_FOUND_RETURNCODE, stdout="", stderr=f"command not found: {command[0]}"
        )

    deadline = time.monotonic() + timeout if timeout else None
    while True:
        try:
            stdout, stderr = process.communicate(timeout=_POLL_INTERVAL)
            return subprocess.CompletedProcess(
                args=command, returncode=process.returncode, stdout=stdout, stderr=stderr
            )
        except subprocess.TimeoutExpired:
            pass

        if cancel is not None and cancel.cancelled:
            logger.warning("Stopping %s: %s", command[0], cancel.reason)
            stdout = _stop(process)
            return subprocess.CompletedProcess(
                args=command, returncode=CANCELLED_RETURNCODE, stdout=stdout, stderr=f"cancelled: {cancel.reason}"
            )
        if deadline is not None and time.monotonic() >= deadline:
            logger.warning("Command %s timed out after %s seconds", command[0], timeout)
            stdout = _stop(process)
            return subprocess.CompletedProcess(
                args=command,
                returncode=TIMEOUT_RETURNCODE,
                stdout=stdout,
                stderr=f"timed out after {timeout:g} seconds",
            )


def classify_error(*, returncode: int, stderr: str, stdout: str) -> ErrorCategory:
    if returncode < 0 or returncode == TIMEOUT_RETURNCODE:
        return "retryable"
    text = f"{stderr}\n{stdout}".lower()
    if any(pattern in text for pattern in _RETRYABLE_PATTERNS):
        return "retryable"
    return "fatal"


def run_command(
    command: list[str],
    *,
    runner: CommandRunner | None = None,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    cancel: CancellationToken | None = None,
    error_message: str,
    check: bool = True,
) -> CommandResult:
    active_runner = runner or default_runner
    logger.debug("Running %s (cwd=%s timeout=%s)", command, cwd, timeout)
    completed = active_runner(command, cwd=cwd, env=env, timeout=timeout, cancel=cancel)
    result = CommandResult(
        command=command,
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )
    if check and result.returncode != 0:
        raise CommandError(
            message=error_message,
            result=result,
            category=classify_error(
                returncode=result.returncode,
                stderr=result.stderr,
                stdout=result.stdout,
            ),
        )
    return result
