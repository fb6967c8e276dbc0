from __future__ import annotations

from orbit.provision.context import ProvisionContext
from orbit.provision.log import ProvisionLogger
from orbit.provision.result import StepResult
from orbit.provision.steps.base import CommandStep
from orbit.provision.steps.environment import read_env_value

KEY_GENERATE_TIMEOUT = 30
MIGRATE_TIMEOUT = 120


class GenerateAppKey(CommandStep):
    """Generate APP_KEY and confirm it landed in .env.

    Runs with the context's clean environment: an APP_KEY inherited from this
    process would make artisan believe a key exists and skip writing one.
    """

    def handle(self, context: ProvisionContext, logger: ProvisionLogger) -> StepResult:
        if not context.path("artisan").exists():
            logger.info("Skipping key:generate - no artisan file found")
            return StepResult.succeeded()

        env_path = context.path(".env")
        if not env_path.exists():
            return StepResult.failed(".env file not found")

        logger.info("Generating application key...")
        result = self._run(
            ["php", "artisan", "key:generate", "--force"],
            cwd=context.project_path,
            env=context.clean_env(),
            timeout=KEY_GENERATE_TIMEOUT,
        )
        logger.log(f"key:generate output: {result.stdout.strip()}")
        if not result.ok:
            return StepResult.failed(f"key:generate failed: {result.output}")

        app_key = read_env_value(env_path.read_text(encoding="utf-8"), "APP_KEY")
        if not app_key:
            return StepResult.failed("APP_KEY is empty after key:generate")
        return StepResult.succeeded({"app_key": app_key})


class RunMigrations(CommandStep):
    def handle(self, context: ProvisionContext, logger: ProvisionLogger) -> StepResult:
        if not context.path("artisan").exists():
            logger.info("Skipping migrations - no artisan file found")
            return StepResult.succeeded()

        logger.info("Running database migrations...")
        result = self._run(
            ["php", "artisan", "migrate", "--force"],
            cwd=context.project_path,
            env=context.clean_env(),
            timeout=MIGRATE_TIMEOUT,
        )
        logger.log(f"migrate exit code: {result.returncode}")
        if result.stdout.strip():
            logger.log(f"migrate stdout: {result.stdout.strip()}")
        if result.stderr.strip():
            logger.log(f"migrate stderr: {result.stderr.strip()}")

        if not result.ok:
            error = result.output or "Unknown error"
            return StepResult.failed(f"migrate failed (exit {result.returncode}): {error}")

        logger.info("Migrations completed successfully")
        return StepResult.succeeded()
