from __future__ import annotations

from pathlib import Path
from typing import Mapping

from orbit.proc import CommandResult, CommandRunner, run_command
from orbit.provision.cancel import CancellationToken


class CommandStep:
    """Shared plumbing for steps that shell out: an injectable runner and the run's cancellation token."""

    def __init__(self, *, runner: CommandRunner | None = None, cancel: CancellationToken | None = None) -> None:
        self._runner = runner
        self._cancel = cancel

    def _run(
        self,
        command: list[str],
        *,
        cwd: Path,
        timeout: float,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        return run_command(
            command,
            runner=self._runner,
            cwd=cwd,
            env=env,
            timeout=timeout,
            cancel=self._cancel,
            error_message=f"{command[0]} failed",
            check=False,
        )


def tail(text: str, limit: int = 500) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[-limit:]


def head(text: str, limit: int = 500) -> str:
    return text.strip()[:limit]
