from __future__ import annotations

import logging

from orbit.config import ConfigManager, config_dir
from orbit.proc import CommandRunner, run_command

logger = logging.getLogger(__name__)

RELOAD_TIMEOUT = 60


class CaddyReloader:
    """Reloads the local reverse proxy so a new site becomes reachable.

    Config generation belongs to the proxy tooling; this only runs the
    configured reload commands in order.
    """

    def __init__(self, commands: list[list[str]], *, runner: CommandRunner | None = None) -> None:
        self._commands = commands
        self._runner = runner

    @classmethod
    def from_config(cls, config: ConfigManager, *, runner: CommandRunner | None = None) -> CaddyReloader:
        configured = config.get("caddy.reload_commands")
        if isinstance(configured, list) and all(isinstance(c, list) for c in configured):
            commands = [[str(part) for part in command] for command in configured]
        else:
            caddyfile = config_dir() / "caddy" / "Caddyfile"
            commands = [["caddy", "reload", "--config", str(caddyfile), "--adapter", "caddyfile"]]
        return cls(commands, runner=runner)

    def reload(self) -> None:
        for command in self._commands:
            logger.info("Reloading reverse proxy: %s", " ".join(command))
            run_command(
                command,
                runner=self._runner,
                timeout=RELOAD_TIMEOUT,
                error_message="Failed to reload reverse proxy",
            )
