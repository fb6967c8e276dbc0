from __future__ import annotations

import logging
import re

from orbit.proc import CommandError, CommandRunner, CommandResult, run_command
from orbit.provision.cancel import CancellationToken

logger = logging.getLogger(__name__)

_GITHUB_URL_RE = re.compile(r"github\.com[:/]([^/]+/[^/\s]+?)(?:\.git)?/?$")
_OWNER_REPO_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")

LOOKUP_TIMEOUT = 15
CREATE_TIMEOUT = 120
CLONE_TIMEOUT = 300


def repo_from_url(url: str | None) -> str:
    """Reduce ``git@github.com:o/r.git`` or ``https://github.com/o/r`` to ``o/r``."""
    if not url:
        return ""
    match = _GITHUB_URL_RE.search(url.strip())
    if match:
        return match.group(1)
    return url.strip().removesuffix(".git")


def is_owner_repo(reference: str) -> bool:
    return bool(_OWNER_REPO_RE.fullmatch(reference))


class GitHubAdapter:
    """Thin wrapper over the ``gh`` CLI, one subprocess per call."""

    def __init__(self, *, runner: CommandRunner | None = None, cancel: CancellationToken | None = None) -> None:
        self._runner = runner
        self._cancel = cancel

    def _run(self, command: list[str], *, timeout: float, error_message: str, **kwargs) -> CommandResult:
        return run_command(
            command,
            runner=self._runner,
            timeout=timeout,
            cancel=self._cancel,
            error_message=error_message,
            **kwargs,
        )

    def current_user(self) -> str | None:
        try:
            result = self._run(
                ["gh", "api", "user", "--jq", ".login"],
                timeout=LOOKUP_TIMEOUT,
                error_message="Failed to resolve GitHub user",
            )
        except CommandError as exc:
            logger.warning("Could not determine GitHub user: %s", exc.detail)
            return None
        login = result.stdout.strip()
        return login or None

    def repo_full_name(self, repo: str) -> str | None:
        """Return the canonical ``owner/name`` when ``repo`` exists, else ``None``."""
        result = self._run(
            ["gh", "api", f"repos/{repo}", "--jq", ".full_name"],
            timeout=LOOKUP_TIMEOUT,
            error_message=f"Failed to look up repository {repo}",
            check=False,
        )
        if not result.ok:
            logger.debug("Repository lookup for %s returned %s", repo, result.returncode)
            return None
        return result.stdout.strip() or None

    def repo_exists(self, repo: str) -> bool:
        result = self._run(
            ["gh", "repo", "view", repo, "--json", "name"],
            timeout=LOOKUP_TIMEOUT,
            error_message=f"Failed to view repository {repo}",
            check=False,
        )
        return result.ok

    def create_from_template(self, repo: str, *, template: str, visibility: str) -> CommandResult:
        logger.info("Creating repository %s from template %s (%s)", repo, template, visibility)
        return self._run(
            ["gh", "repo", "create", repo, f"--{visibility}", "--template", template, "--clone=false"],
            timeout=CREATE_TIMEOUT,
            error_message=f"Failed to create repository {repo}",
        )

    def fork(self, source: str, *, organization: str | None = None) -> CommandResult:
        command = ["gh", "repo", "fork", source, "--clone=false"]
        if organization:
            command.extend(["--org", organization])
        logger.info("Forking repository %s", source)
        return self._run(command, timeout=CREATE_TIMEOUT, error_message=f"Failed to fork repository {source}")

    def clone(self, reference: str, target: str) -> CommandResult:
        if is_owner_repo(reference):
            command = ["gh", "repo", "clone", reference, target]
        else:
            command = ["git", "clone", reference, target]
        logger.info("Cloning %s into %s", reference, target)
        return self._run(command, timeout=CLONE_TIMEOUT, error_message=f"Failed to clone {reference}")


def resolve_username(config, github: GitHubAdapter) -> str | None:
    """Configured ``github_username`` or the ``gh`` login, cached back into config."""
    username = config.get("github_username")
    if username:
        return str(username)
    username = github.current_user()
    if username:
        config.set("github_username", username)
    return username
