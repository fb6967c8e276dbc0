from __future__ import annotations

import logging
from pathlib import Path
import subprocess
import sys
from typing import Callable

from orbit.config import log_dir

logger = logging.getLogger(__name__)

Spawner = Callable[..., subprocess.Popen]


def provision_command(slug: str, options: dict[str, object]) -> list[str]:
    """``orbit provision`` argument vector for ``options`` (option name -> value)."""
    command = [sys.executable, "-m", "orbit.cli", "provision", slug]
    for name, value in options.items():
        flag = f"--{name.replace('_', '-')}"
        if value is None or value is False:
            continue
        if value is True:
            command.append(flag)
        else:
            command.extend([flag, str(value)])
    return command


def launch_detached(
    slug: str,
    options: dict[str, object],
    *,
    log_directory: Path | None = None,
    spawner: Spawner | None = None,
) -> int:
    """Start a provisioning run in its own session and return its pid.

    The child's stdout/stderr go to ``provision-<slug>.out``; the progress log
    proper is written by the pipeline itself.
    """
    directory = log_directory or log_dir()
    directory.mkdir(parents=True, exist_ok=True)
    command = provision_command(slug, options)
    spawn = spawner or subprocess.Popen
    with (directory / f"provision-{slug}.out").open("ab") as output:
        process = spawn(
            command,
            stdin=subprocess.DEVNULL,
            stdout=output,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            close_fds=True,
        )
    logger.info("Launched provisioning for %s (pid=%s)", slug, process.pid)
    return process.pid
