from __future__ import annotations

from datetime import datetime
import logging
from pathlib import Path

from orbit.config import log_dir

logger = logging.getLogger(__name__)

SUCCESS_MARKER = "provisioned successfully"
FAILURE_MARKER = "Provisioning failed"


def provision_log_path(slug: str, directory: Path | None = None) -> Path:
    return (directory or log_dir()) / f"provision-{slug}.log"


class ProvisionLogger:
    """Append-only, human-readable progress log for one project run.

    Each call appends one line and closes the file again, so readers polling
    the log never see more than a single partially written line.
    """

    def __init__(self, slug: str, *, directory: Path | None = None) -> None:
        self.slug = slug
        self.path = provision_log_path(slug, directory)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def info(self, message: str) -> None:
        self._append("INFO", message)
        logger.info("[%s] %s", self.slug, message)

    def warn(self, message: str) -> None:
        self._append("WARN", message)
        logger.warning("[%s] %s", self.slug, message)

    def error(self, message: str) -> None:
        self._append("ERROR", message)
        logger.error("[%s] %s", self.slug, message)

    def log(self, message: str) -> None:
        """Detail line; kept in the file, only logged at DEBUG."""
        self._append("DEBUG", message)
        logger.debug("[%s] %s", self.slug, message)

    def start_run(self) -> None:
        """Move the previous run's log aside to ``.log.1`` and start an empty one."""
        if self.path.exists():
            self.path.replace(self.path.with_name(self.path.name + ".1"))

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8", errors="replace")

    def _append(self, level: str, message: str) -> None:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        lines = message.splitlines() or [""]
        with self.path.open("a", encoding="utf-8") as fh:
            for line in lines:
                fh.write(f"[{stamp}] {level}: {line}\n")
