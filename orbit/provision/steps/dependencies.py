from __future__ import annotations

import json
import os
from pathlib import Path

from orbit.provision.context import ProvisionContext
from orbit.provision.log import ProvisionLogger
from orbit.provision.result import StepResult
from orbit.provision.steps.base import CommandStep, head, tail

BUN_TIMEOUT = 60
INSTALL_TIMEOUT = 600

# lock file -> package manager, in detection priority order
LOCK_FILES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("bun.lock", "bun.lockb"), "bun"),
    (("package-lock.json",), "npm"),
    (("yarn.lock",), "yarn"),
    (("pnpm-lock.yaml",), "pnpm"),
)


def detect_lock_files(project_path: Path) -> list[str]:
    found = []
    for names, _manager in LOCK_FILES:
        present = [name for name in names if (project_path / name).exists()]
        if present:
            found.append(present[0])
    return found


def detect_package_manager(project_path: Path) -> str:
    for names, manager in LOCK_FILES:
        if any((project_path / name).exists() for name in names):
            return manager
    return "npm"


def bun_executable(home: Path) -> str:
    candidate = home / ".bun" / "bin" / "bun"
    return str(candidate) if candidate.exists() else "bun"


def bun_env(home: Path, **extra: str) -> dict[str, str]:
    env = dict(os.environ)
    env["PATH"] = f"{home / '.bun' / 'bin'}:{env.get('PATH', '')}"
    env.update(extra)
    return env


def read_json(path: Path) -> dict:
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


class InstallComposerDependencies(CommandStep):
    def handle(self, context: ProvisionContext, logger: ProvisionLogger) -> StepResult:
        if not context.path("composer.json").exists():
            logger.info("No composer.json found, skipping Composer dependencies")
            return StepResult.succeeded()

        logger.info("Installing Composer dependencies...")
        result = self._run(
            ["composer", "install", "--no-interaction"],
            cwd=context.project_path,
            env=context.clean_env(),
            timeout=INSTALL_TIMEOUT,
        )
        if not result.ok:
            return StepResult.failed(f"Composer install failed: {head(result.output)}")
        logger.info("Composer install completed")
        return StepResult.succeeded()


class InstallNodeDependencies(CommandStep):
    """Install JavaScript dependencies with whichever manager the lock file names."""

    def handle(self, context: ProvisionContext, logger: ProvisionLogger) -> StepResult:
        project_path = context.project_path
        if not context.path("package.json").exists():
            logger.info("No package.json found, skipping Node dependencies")
            return StepResult.succeeded({"package_manager": None})

        lock_files = detect_lock_files(project_path)
        if len(lock_files) > 1:
            return StepResult.failed(f"Multiple lock files detected: {', '.join(lock_files)}")

        manager = detect_package_manager(project_path)
        installer = {
            "bun": self._install_with_bun,
            "pnpm": self._install_with_pnpm,
            "yarn": self._install_with_yarn,
        }.get(manager, self._install_with_npm)
        result = installer(context, logger)
        if result.is_failed:
            return result
        return StepResult.succeeded({"package_manager": manager})

    def _install_with_bun(self, context: ProvisionContext, logger: ProvisionLogger) -> StepResult:
        home = context.home_dir()
        # stale bun state makes a frozen install fail; start clean
        for name in ("bunfig.toml", "bun.lock", "bun.lockb"):
            context.path(name).unlink(missing_ok=True)

        logger.info("Installing dependencies with Bun...")
        result = self._run(
            [bun_executable(home), "install", "--no-progress"],
            cwd=context.project_path,
            env=bun_env(home, CI="1"),
            timeout=BUN_TIMEOUT,
        )
        if result.timed_out:
            return StepResult.failed(f"Bun install timed out after {BUN_TIMEOUT} seconds")
        if not result.ok:
            return StepResult.failed(f"Bun install failed: {head(result.stdout or result.stderr)}")
        logger.info("Bun install completed")
        return StepResult.succeeded()

    def _install_with_pnpm(self, context: ProvisionContext, logger: ProvisionLogger) -> StepResult:
        logger.info("Installing dependencies with pnpm...")
        result = self._run(["pnpm", "install"], cwd=context.project_path, timeout=INSTALL_TIMEOUT)
        if not result.ok:
            return StepResult.failed(f"pnpm install failed: {head(result.output)}")
        logger.info("pnpm install completed")
        return StepResult.succeeded()

    def _install_with_yarn(self, context: ProvisionContext, logger: ProvisionLogger) -> StepResult:
        logger.info("Installing dependencies with Yarn...")
        result = self._run(["yarn", "install"], cwd=context.project_path, timeout=INSTALL_TIMEOUT)
        if not result.ok:
            return StepResult.failed(f"Yarn install failed: {head(result.output)}")
        logger.info("Yarn install completed")
        return StepResult.succeeded()

    def _install_with_npm(self, context: ProvisionContext, logger: ProvisionLogger) -> StepResult:
        logger.info("Installing dependencies with npm...")
        result = self._run(
            ["npm", "install", "--legacy-peer-deps"], cwd=context.project_path, timeout=INSTALL_TIMEOUT
        )
        if result.timed_out:
            return StepResult.failed(f"npm install timed out after {INSTALL_TIMEOUT} seconds")
        if not result.ok:
            # peer dependency noise is common; a partial install still builds
            logger.warn(f"npm install had issues: {head(result.stdout or result.stderr)}")
        logger.info("npm install completed")
        return StepResult.succeeded()


class BuildAssets(CommandStep):
    def handle(self, context: ProvisionContext, logger: ProvisionLogger, package_manager: str | None = None) -> StepResult:
        package_json = context.path("package.json")
        if not package_json.exists():
            logger.info("No package.json found, skipping asset build")
            return StepResult.succeeded()

        scripts = read_json(package_json).get("scripts") or {}
        if not isinstance(scripts, dict) or "build" not in scripts:
            logger.info("No build script in package.json, skipping asset build")
            return StepResult.succeeded()

        manager = package_manager or detect_package_manager(context.project_path)
        logger.info(f"Building assets with {manager}...")
        if manager == "bun":
            home = context.home_dir()
            result = self._run(
                [bun_executable(home), "run", "build"],
                cwd=context.project_path,
                env=bun_env(home),
                timeout=BUN_TIMEOUT,
            )
        else:
            result = self._run([manager, "run", "build"], cwd=context.project_path, timeout=INSTALL_TIMEOUT)

        output = f"{result.stdout}\n{result.stderr}".strip()
        logger.log(f"Build exit code: {result.returncode}")
        if output:
            logger.log(f"Build output: {tail(output, 1000)}")
        if not result.ok:
            return StepResult.failed(f"Asset build failed: {head(output)}")

        logger.info("Assets built successfully")
        return StepResult.succeeded()


class RunPostInstallScripts(CommandStep):
    """Run composer's post-install hooks; their exit status is recorded, never fatal."""

    HOOKS = ("post-autoload-dump", "post-install-cmd")

    def handle(self, context: ProvisionContext, logger: ProvisionLogger) -> StepResult:
        composer_json = context.path("composer.json")
        if not composer_json.exists():
            return StepResult.succeeded()

        scripts = read_json(composer_json).get("scripts") or {}
        if not isinstance(scripts, dict) or not any(hook in scripts for hook in self.HOOKS):
            logger.log("No post-install scripts found in composer.json")
            return StepResult.succeeded()

        logger.info("Running post-install scripts...")
        result = self._run(
            ["composer", "run-script", "post-autoload-dump"],
            cwd=context.project_path,
            env=context.clean_env(),
            timeout=300,
        )
        logger.log(f"Post-install scripts completed (exit: {result.returncode})")
        logger.info("Post-install scripts completed")
        return StepResult.succeeded({"exit_code": result.returncode})
