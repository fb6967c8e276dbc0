from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import re
import time

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from orbit import db
from orbit.db import init_db, session_scope
from orbit.models import Phase, ProvisionStatusORM, ProvisionStatusRead, utcnow
from orbit.proc import CommandRunner, run_command
from orbit.provision.log import FAILURE_MARKER, SUCCESS_MARKER, provision_log_path
from orbit.provision.naming import check_slug

logger = logging.getLogger(__name__)

RECENT_WRITE_WINDOW = 30
PGREP_TIMEOUT = 5

# most advanced phase first; the first phase with a matching marker wins
PHASE_MARKERS: tuple[tuple[Phase, tuple[str, ...]], ...] = (
    (Phase.FINALIZING, ("Regenerating Caddy", "Caddy reloaded", "Registering project with orchestrator")),
    (Phase.SETTING_UP, ("Setup completed", "Running project setup")),
    (Phase.CLONING, ("Cloning repository", "Repository cloned")),
    (Phase.CREATING_REPO, ("Creating GitHub repository", "GitHub repository created")),
)

_FAILED_RE = re.compile(r"Provisioning failed: (.+)$", re.MULTILINE)
_FAILED_TO_RE = re.compile(r"Failed to (.+)$", re.MULTILINE)


def has_terminal_marker(content: str) -> bool:
    return SUCCESS_MARKER in content or FAILURE_MARKER in content


def infer_phase(content: str, *, running: bool) -> Phase:
    if SUCCESS_MARKER in content:
        return Phase.READY
    if FAILURE_MARKER in content or "Failed to" in content:
        return Phase.FAILED
    if not running:
        return Phase.FAILED
    for phase, markers in PHASE_MARKERS:
        if any(marker in content for marker in markers):
            return phase
    return Phase.PROVISIONING


def extract_error(content: str) -> str | None:
    match = _FAILED_RE.search(content)
    if match:
        return match.group(1).strip()
    match = _FAILED_TO_RE.search(content)
    if match:
        return f"Failed to {match.group(1).strip()}"
    return None


def pipeline_process_pattern(slug: str) -> str:
    # "provision <slug>" but not "provision-status <slug>"
    check_slug(slug)
    return f"provision[[:space:]]+{slug}([[:space:]]|$)"


def find_pipeline_pids(slug: str, *, runner: CommandRunner | None = None) -> list[int]:
    result = run_command(
        ["pgrep", "-f", pipeline_process_pattern(slug)],
        runner=runner,
        timeout=PGREP_TIMEOUT,
        error_message="pgrep failed",
        check=False,
    )
    if not result.ok:
        return []
    own = {os.getpid(), os.getppid()}
    pids = []
    for token in result.stdout.split():
        if token.isdigit() and int(token) not in own:
            pids.append(int(token))
    return pids


def recently_written(log_file: Path, *, window: float = RECENT_WRITE_WINDOW, now: float | None = None) -> bool:
    try:
        mtime = log_file.stat().st_mtime
    except FileNotFoundError:
        return False
    return ((now if now is not None else time.time()) - mtime) < window


class StatusStore:
    """One row per project holding the last phase a pipeline entered."""

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine
        self._ready = False

    def _ensure(self) -> None:
        if not self._ready:
            init_db(self._engine or db.engine)
            self._ready = True

    def record(self, slug: str, status: Phase, error: str | None = None) -> None:
        self._ensure()
        with session_scope(self._engine) as session:
            row = session.get(ProvisionStatusORM, slug)
            if row is None:
                row = ProvisionStatusORM(slug=slug, status=status.value)
            row.status = status.value
            row.error = error
            row.updated_at = utcnow()
            session.add(row)
            session.commit()

    def get(self, slug: str) -> ProvisionStatusORM | None:
        self._ensure()
        with session_scope(self._engine) as session:
            row = session.get(ProvisionStatusORM, slug)
            if row is not None:
                session.expunge(row)
            return row

    def clear(self, slug: str) -> None:
        self._ensure()
        with session_scope(self._engine) as session:
            row = session.get(ProvisionStatusORM, slug)
            if row is not None:
                session.delete(row)
                session.commit()


@dataclass
class StatusReader:
    """Answers "where is this pipeline?" for a process it does not control.

    Reads the structured status record when there is one and falls back to
    pattern-matching the provision log otherwise. Liveness comes from the
    process table, with a recently written log counting as alive until it
    carries a terminal marker.
    """

    store: StatusStore | None = None
    log_directory: Path | None = None
    runner: CommandRunner | None = None
    window: float = RECENT_WRITE_WINDOW

    def is_running(self, slug: str, content: str | None = None) -> bool:
        if find_pipeline_pids(slug, runner=self.runner):
            return True
        log_file = provision_log_path(slug, self.log_directory)
        if recently_written(log_file, window=self.window):
            if content is None:
                content = log_file.read_text(encoding="utf-8", errors="replace")
            return not has_terminal_marker(content)
        return False

    def status(self, slug: str) -> ProvisionStatusRead:
        check_slug(slug)
        log_file = provision_log_path(slug, self.log_directory)
        content = log_file.read_text(encoding="utf-8", errors="replace") if log_file.exists() else None

        row = self._record(slug)
        if row is not None:
            phase = Phase(row.status)
            running = False if phase.terminal else self.is_running(slug, content or "")
            error = row.error
            if not phase.terminal and not running:
                phase = Phase.FAILED
                error = error or "Provisioning process is no longer running"
            return ProvisionStatusRead(
                slug=slug, status=phase, error=error, running=running, source="record", updated_at=row.updated_at
            )

        if content is None:
            return ProvisionStatusRead(
                slug=slug, status=Phase.NOT_FOUND, error="No provisioning log found for this project"
            )

        running = self.is_running(slug, content)
        return ProvisionStatusRead(
            slug=slug,
            status=infer_phase(content, running=running),
            error=extract_error(content),
            running=running,
            source="log",
        )

    def _record(self, slug: str) -> ProvisionStatusORM | None:
        if self.store is None:
            return None
        try:
            return self.store.get(slug)
        except SQLAlchemyError as exc:
            logger.warning("Status record unavailable for %s, falling back to log: %s", slug, exc)
            return None
