from __future__ import annotations

import time

from orbit.config import ConfigManager
from orbit.proc import CommandError
from orbit.provision.context import ProvisionContext
from orbit.provision.github import GitHubAdapter, repo_from_url, resolve_username
from orbit.provision.log import ProvisionLogger
from orbit.provision.result import StepResult

PROPAGATION_DELAY = 3.0


def target_repository(context: ProvisionContext, owner: str | None) -> str | None:
    """Full name of the remote a run will end up pushing to, if it creates one.

    An explicit ``github_repo`` always wins. Without an owner nothing can be
    derived; cloning a repository the owner already holds creates nothing.
    """
    if context.github_repo:
        return context.github_repo
    if not owner:
        return None
    if context.template:
        return f"{owner}/{context.slug}"
    if context.clone_url and context.fork:
        source = repo_from_url(context.clone_url)
        parts = source.split("/")
        name = parts[1] if len(parts) > 1 and parts[1] else context.slug
        return f"{owner}/{name}"
    if context.clone_url:
        source_owner = repo_from_url(context.clone_url).split("/")[0]
        if source_owner.lower() != owner.lower():
            return f"{owner}/{context.slug}"
    return None


class CheckRepoAvailable:
    """Refuse to continue when the remote this run would create already exists."""

    def __init__(self, github: GitHubAdapter) -> None:
        self._github = github

    def handle(self, context: ProvisionContext, logger: ProvisionLogger, config: ConfigManager) -> StepResult:
        fallback = None
        if not context.organization and not context.github_repo and (context.template or context.clone_url):
            fallback = resolve_username(config, self._github)
        target = target_repository(context, context.github_owner(fallback))
        if not target:
            logger.log("No target repository to check")
            return StepResult.succeeded()

        logger.info(f"Checking if repository {target} is available...")
        existing = self._github.repo_full_name(target)
        if existing:
            return StepResult.failed(
                f"Repository '{target}' already exists on GitHub. Please choose a different project name."
            )

        logger.info(f"Repository {target} is available")
        return StepResult.succeeded({"repo": target})


class CreateGitHubRepository:
    def __init__(self, github: GitHubAdapter, *, propagation_delay: float = PROPAGATION_DELAY) -> None:
        self._github = github
        self._propagation_delay = propagation_delay

    def handle(self, context: ProvisionContext, logger: ProvisionLogger, target_repo: str) -> StepResult:
        if not context.template:
            return StepResult.failed("No template specified for GitHub repository creation")

        logger.info(f"Creating GitHub repository: {target_repo} from template {context.template}")
        if self._github.repo_exists(target_repo):
            return StepResult.failed(f"Repository '{target_repo}' already exists. Please choose a different project name.")

        try:
            self._github.create_from_template(target_repo, template=context.template, visibility=context.visibility)
        except CommandError as exc:
            return StepResult.failed(f"Failed to create GitHub repository: {exc.detail}")

        logger.info("GitHub repository created successfully")
        if self._propagation_delay:
            logger.log(f"Waiting {self._propagation_delay:g} seconds for GitHub propagation...")
            time.sleep(self._propagation_delay)
        return StepResult.succeeded({"repo": target_repo, "clone_url": target_repo})


class ForkRepository:
    def __init__(self, github: GitHubAdapter, *, propagation_delay: float = PROPAGATION_DELAY) -> None:
        self._github = github
        self._propagation_delay = propagation_delay

    def handle(self, context: ProvisionContext, logger: ProvisionLogger, config: ConfigManager) -> StepResult:
        if not context.clone_url:
            return StepResult.failed("No source URL provided for forking")

        source = repo_from_url(context.clone_url)
        logger.info(f"Forking repository: {source}")
        try:
            self._github.fork(source, organization=context.organization)
        except CommandError as exc:
            return StepResult.failed(f"Failed to fork repository: {exc.detail}")

        owner = context.organization or resolve_username(config, self._github)
        if not owner:
            return StepResult.failed("Could not determine GitHub username for fork")

        fork = f"{owner}/{source.rsplit('/', 1)[-1]}"
        logger.info(f"Repository forked to: {fork}")
        if self._propagation_delay:
            logger.log(f"Waiting {self._propagation_delay:g} seconds for GitHub propagation...")
            time.sleep(self._propagation_delay)
        return StepResult.succeeded({"repo": fork, "clone_url": fork})


class CloneRepository:
    def __init__(self, github: GitHubAdapter) -> None:
        self._github = github

    def handle(self, context: ProvisionContext, logger: ProvisionLogger, clone_url: str | None = None) -> StepResult:
        reference = clone_url or context.clone_url
        if not reference:
            return StepResult.failed("No clone URL provided")

        target = context.project_path
        logger.info(f"Cloning repository to {target}")
        if target.is_dir():
            if any(target.iterdir()):
                return StepResult.failed(f"Project directory is not empty: {target}")
            target.rmdir()
        target.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._github.clone(reference, str(target))
        except CommandError as exc:
            return StepResult.failed(f"Failed to clone repository: {exc.detail}")

        logger.info("Repository cloned successfully")
        return StepResult.succeeded({"path": str(target)})
