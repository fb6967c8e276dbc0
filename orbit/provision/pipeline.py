from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from orbit.config import ConfigManager
from orbit.models import Phase
from orbit.proc import CommandError, CommandRunner
from orbit.provision.broadcast import ReverbBroadcaster
from orbit.provision.cancel import CancellationToken
from orbit.provision.context import ProvisionContext
from orbit.provision.github import GitHubAdapter, resolve_username
from orbit.provision.log import FAILURE_MARKER, SUCCESS_MARKER, ProvisionLogger
from orbit.provision.proxy import CaddyReloader
from orbit.provision.registry import McpClient, RegistrationError
from orbit.provision.result import StepResult
from orbit.provision.status import StatusStore
from orbit.provision.steps.artisan import GenerateAppKey, RunMigrations
from orbit.provision.steps.dependencies import (
    BuildAssets,
    InstallComposerDependencies,
    InstallNodeDependencies,
    RunPostInstallScripts,
)
from orbit.provision.steps.environment import ConfigureEnvironment, ConfigureTrustedProxies, WriteRuntimeVersion
from orbit.provision.steps.repository import (
    PROPAGATION_DELAY,
    CheckRepoAvailable,
    CloneRepository,
    CreateGitHubRepository,
    ForkRepository,
)
from orbit.services.errors import ConfigurationException

logger = logging.getLogger(__name__)

TRANSITION_MESSAGES = {
    Phase.SETTING_UP: "Running project setup...",
    Phase.FINALIZING: "Finalizing project...",
}


def resolve_project_path(config: ConfigManager, slug: str, path: str | None = None) -> Path:
    if path:
        return Path(path).expanduser()
    paths = config.get_paths()
    if not paths:
        raise ConfigurationException("No project paths configured")
    return Path(paths[0]).expanduser() / slug


def build_context(config: ConfigManager, slug: str, *, path: str | None = None, **fields: Any) -> ProvisionContext:
    fields = {key: value for key, value in fields.items() if value is not None}
    fields.setdefault("tld", config.get_tld())
    return ProvisionContext(slug=slug, project_path=resolve_project_path(config, slug, path), **fields)


@dataclass
class RunState:
    """Values one step hands to a later one during a single run."""

    context: ProvisionContext
    logger: ProvisionLogger
    target_repo: str | None = None
    clone_url: str | None = None
    package_manager: str | None = None
    results: dict[str, StepResult] = field(default_factory=dict)


@dataclass(frozen=True)
class Step:
    name: str
    phase: Phase
    run: Callable[[RunState], StepResult]
    fatal: bool = True


class ProvisionPipeline:
    """Drive one project from slug to a running, registered site.

    Steps run strictly in order. Every phase change is logged, broadcast and
    recorded *before* the phase's first step starts. A fatal step failure or a
    cancellation ends the run with ``failed``; best-effort steps only warn.
    """

    def __init__(
        self,
        *,
        config: ConfigManager,
        broadcaster: ReverbBroadcaster,
        mcp: McpClient | None = None,
        proxy: CaddyReloader | None = None,
        store: StatusStore | None = None,
        runner: CommandRunner | None = None,
        cancel: CancellationToken | None = None,
        log_directory: Path | None = None,
        propagation_delay: float = PROPAGATION_DELAY,
    ) -> None:
        self.config = config
        self.broadcaster = broadcaster
        self.mcp = mcp
        self.proxy = proxy
        self.store = store
        self.cancel = cancel or CancellationToken()
        self.log_directory = log_directory
        self.github = GitHubAdapter(runner=runner, cancel=self.cancel)
        self._runner = runner
        self._propagation_delay = propagation_delay
        self.phase: Phase | None = None

    def plan(self, context: ProvisionContext) -> list[Step]:
        github = self.github
        command_args = {"runner": self._runner, "cancel": self.cancel}
        steps = [Step("check_repo_available", Phase.PROVISIONING, self._check_available)]

        if context.template:
            steps.append(Step("resolve_target_repo", Phase.PROVISIONING, self._resolve_target_repo))
            creator = CreateGitHubRepository(github, propagation_delay=self._propagation_delay)
            steps.append(
                Step(
                    "create_repository",
                    Phase.CREATING_REPO,
                    lambda s: self._keep_clone_url(s, creator.handle(s.context, s.logger, s.target_repo)),
                )
            )
        elif context.fork and context.clone_url:
            forker = ForkRepository(github, propagation_delay=self._propagation_delay)
            steps.append(
                Step(
                    "fork_repository",
                    Phase.CREATING_REPO,
                    lambda s: self._keep_clone_url(s, forker.handle(s.context, s.logger, self.config)),
                )
            )

        if context.template or context.clone_url:
            cloner = CloneRepository(github)
            steps.append(
                Step("clone_repository", Phase.CLONING, lambda s: cloner.handle(s.context, s.logger, s.clone_url))
            )
        else:
            steps.append(Step("verify_project_path", Phase.SETTING_UP, self._verify_project_path))

        composer = InstallComposerDependencies(**command_args)
        hooks = RunPostInstallScripts(**command_args)
        environment = ConfigureEnvironment()
        app_key = GenerateAppKey(**command_args)
        proxies = ConfigureTrustedProxies()
        runtime = WriteRuntimeVersion()
        migrations = RunMigrations(**command_args)
        steps.extend(
            [
                Step("install_composer_dependencies", Phase.SETTING_UP, lambda s: composer.handle(s.context, s.logger)),
                Step(
                    "run_post_install_scripts",
                    Phase.SETTING_UP,
                    lambda s: hooks.handle(s.context, s.logger),
                    fatal=False,
                ),
                Step("configure_environment", Phase.SETTING_UP, lambda s: environment.handle(s.context, s.logger)),
                Step("generate_app_key", Phase.SETTING_UP, lambda s: app_key.handle(s.context, s.logger)),
                Step("configure_trusted_proxies", Phase.SETTING_UP, lambda s: proxies.handle(s.context, s.logger)),
                Step("write_runtime_version", Phase.SETTING_UP, lambda s: runtime.handle(s.context, s.logger)),
                Step("run_migrations", Phase.SETTING_UP, lambda s: migrations.handle(s.context, s.logger)),
            ]
        )
        if not context.minimal:
            node = InstallNodeDependencies(**command_args)
            assets = BuildAssets(**command_args)
            steps.extend(
                [
                    Step(
                        "install_node_dependencies",
                        Phase.SETTING_UP,
                        lambda s: self._keep_package_manager(s, node.handle(s.context, s.logger)),
                    ),
                    Step(
                        "build_assets",
                        Phase.SETTING_UP,
                        lambda s: assets.handle(s.context, s.logger, s.package_manager),
                    ),
                ]
            )
        steps.append(Step("setup_completed", Phase.SETTING_UP, self._setup_completed))

        if self.mcp is not None and self.mcp.is_configured():
            steps.append(Step("register_project", Phase.FINALIZING, self._register, fatal=False))
        else:
            steps.append(Step("finalize", Phase.FINALIZING, lambda s: StepResult.succeeded()))

        # ready goes out before the reload: reloading the proxy drops the websocket connections
        if self.proxy is not None:
            steps.append(Step("reload_proxy", Phase.READY, self._reload_proxy, fatal=False))
        return steps

    def run(self, context: ProvisionContext) -> int:
        log = ProvisionLogger(context.slug, directory=self.log_directory)
        log.start_run()
        state = RunState(context=context, logger=log)
        self.cancel.on_cancel(lambda reason: log.error(f"Aborting: {reason}"))

        self._transition(state, Phase.PROVISIONING)
        log.info(f"Provisioning project {context.slug} at {context.project_path}")
        try:
            for step in self.plan(context):
                if self.cancel.cancelled:
                    return self._fail(state, self.cancel.reason or "Cancelled")
                if step.phase != self.phase:
                    self._transition(state, step.phase)

                logger.debug("Running step %s for %s", step.name, context.slug)
                result = step.run(state)
                state.results[step.name] = result

                if self.cancel.cancelled:
                    return self._fail(state, self.cancel.reason or "Cancelled")
                if result.is_failed:
                    if step.fatal:
                        return self._fail(state, result.error or f"{step.name} failed")
                    log.warn(f"{step.name} failed (non-fatal): {result.error}")
        except Exception as exc:
            logger.exception("Provisioning crashed for slug=%s", context.slug)
            return self._fail(state, str(exc) or exc.__class__.__name__)

        if self.phase != Phase.READY:
            self._transition(state, Phase.READY)
        log.info(f"Project {context.slug} {SUCCESS_MARKER}!")
        return 0

    def abort(self, slug: str, message: str) -> int:
        """Report a run that failed before a context could be built."""
        log = ProvisionLogger(slug, directory=self.log_directory)
        log.start_run()
        log.error(f"{FAILURE_MARKER}: {message}")
        self._publish(slug, Phase.FAILED, message)
        return 1

    def _transition(self, state: RunState, phase: Phase, error: str | None = None) -> None:
        self.phase = phase
        message = TRANSITION_MESSAGES.get(phase)
        if message:
            state.logger.info(message)
        state.logger.log(f"Status: {phase.value}")
        self._publish(state.context.slug, phase, error)

    def _publish(self, slug: str, phase: Phase, error: str | None = None) -> None:
        self.broadcaster.broadcast_status(slug, phase.value, error)
        if self.store is None:
            return
        try:
            self.store.record(slug, phase, error)
        except SQLAlchemyError as exc:
            logger.warning("Could not record status %s for %s: %s", phase.value, slug, exc)

    def _fail(self, state: RunState, message: str) -> int:
        state.logger.error(f"{FAILURE_MARKER}: {message}")
        self._transition(state, Phase.FAILED, message)
        return 1

    def _check_available(self, state: RunState) -> StepResult:
        return CheckRepoAvailable(self.github).handle(state.context, state.logger, self.config)

    def _resolve_target_repo(self, state: RunState) -> StepResult:
        context = state.context
        if context.github_repo:
            state.target_repo = context.github_repo
        else:
            owner = context.organization or resolve_username(self.config, self.github)
            if not owner:
                return StepResult.failed("Could not determine GitHub owner for the new repository")
            state.target_repo = f"{owner}/{context.slug}"
        return StepResult.succeeded({"repo": state.target_repo})

    @staticmethod
    def _keep_clone_url(state: RunState, result: StepResult) -> StepResult:
        if result.is_success:
            state.target_repo = result.data.get("repo", state.target_repo)
            state.clone_url = result.data.get("clone_url")
        return result

    @staticmethod
    def _keep_package_manager(state: RunState, result: StepResult) -> StepResult:
        if result.is_success:
            state.package_manager = result.data.get("package_manager")
        return result

    @staticmethod
    def _verify_project_path(state: RunState) -> StepResult:
        path = state.context.project_path
        if not path.is_dir():
            return StepResult.failed(f"Project directory does not exist: {path}")
        return StepResult.succeeded()

    @staticmethod
    def _setup_completed(state: RunState) -> StepResult:
        state.logger.info("Setup completed")
        return StepResult.succeeded()

    def _register(self, state: RunState) -> StepResult:
        assert self.mcp is not None
        context = state.context
        state.logger.info("Registering project with orchestrator...")
        try:
            self.mcp.register_project(
                slug=context.slug,
                local_path=str(context.project_path),
                github_repo=state.target_repo or context.github_repo,
                name=context.display_name,
            )
        except RegistrationError as exc:
            return StepResult.failed(f"Orchestrator registration failed: {exc}")
        state.logger.info("Registered with orchestrator")
        return StepResult.succeeded()

    def _reload_proxy(self, state: RunState) -> StepResult:
        assert self.proxy is not None
        state.logger.info("Regenerating Caddy configuration...")
        try:
            self.proxy.reload()
        except CommandError as exc:
            return StepResult.failed(f"Reverse proxy reload failed: {exc.detail}")
        state.logger.info("Caddy reloaded")
        return StepResult.succeeded()
