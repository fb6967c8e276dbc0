from __future__ import annotations

import re
import shutil

from orbit.provision.context import ProvisionContext
from orbit.provision.log import ProvisionLogger
from orbit.provision.result import StepResult
from orbit.provision.steps.dependencies import read_json

DEFAULT_PHP_VERSION = "8.4"
SUPPORTED_PHP_VERSIONS = ("8.3", "8.4")

_NEEDS_QUOTES_RE = re.compile(r"[\s#\"'$]")
_PHP_CONSTRAINT_RE = re.compile(r"(\d+)\.(\d+)")


def format_env_value(value: str) -> str:
    if value and _NEEDS_QUOTES_RE.search(value):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return value


def rewrite_env(content: str, values: dict[str, str]) -> tuple[str, list[str]]:
    """Set ``values`` in dotenv ``content``; returns the new text and the keys that changed.

    Existing ``KEY=`` lines are replaced in place, missing keys are appended.
    Lines for keys not in ``values`` are left byte-for-byte alone.
    """
    lines = content.splitlines()
    changed: list[str] = []
    seen: set[str] = set()
    for key, raw in values.items():
        rendered = f"{key}={format_env_value(raw)}"
        pattern = re.compile(rf"^{re.escape(key)}=.*$")
        for index, line in enumerate(lines):
            if pattern.match(line):
                seen.add(key)
                if line != rendered:
                    lines[index] = rendered
                    if key not in changed:
                        changed.append(key)
        if key not in seen:
            lines.append(rendered)
            changed.append(key)
    text = "\n".join(lines)
    return (text + "\n" if text else text), changed


def env_values(context: ProvisionContext) -> dict[str, str]:
    driver = context.db_driver or "sqlite"
    values = {
        "APP_NAME": context.app_name,
        "APP_URL": f"https://{context.domain}",
        "DB_CONNECTION": driver,
        "DB_DATABASE": (
            str(context.path("database", "database.sqlite"))
            if driver == "sqlite"
            else context.slug.replace("-", "_")
        ),
        "REDIS_HOST": "127.0.0.1",
        "REDIS_PORT": "6379",
    }
    if context.session_driver:
        values["SESSION_DRIVER"] = context.session_driver
    if context.cache_driver:
        values["CACHE_STORE"] = context.cache_driver
    if context.queue_driver:
        values["QUEUE_CONNECTION"] = context.queue_driver
    return values


def read_env_value(content: str, key: str) -> str | None:
    match = re.search(rf"^{re.escape(key)}=(.*)$", content, re.MULTILINE)
    if not match:
        return None
    return match.group(1).strip().strip('"').strip("'")


class ConfigureEnvironment:
    def handle(self, context: ProvisionContext, logger: ProvisionLogger) -> StepResult:
        env_path = context.path(".env")
        example_path = context.path(".env.example")
        if not env_path.exists():
            if not example_path.exists():
                logger.info("No .env or .env.example found, skipping environment configuration")
                return StepResult.succeeded({"changed": []})
            shutil.copyfile(example_path, env_path)
            logger.log("Copied .env.example to .env")

        logger.info("Configuring environment...")
        values = env_values(context)
        content, changed = rewrite_env(env_path.read_text(encoding="utf-8"), values)
        env_path.write_text(content, encoding="utf-8")
        if changed:
            logger.log(f"Updated .env keys: {', '.join(changed)}")

        if values["DB_CONNECTION"] == "sqlite":
            database = context.path("database", "database.sqlite")
            database.parent.mkdir(parents=True, exist_ok=True)
            database.touch(exist_ok=True)

        logger.info("Environment configured")
        return StepResult.succeeded({"changed": changed})


class WriteRuntimeVersion:
    """Pin the PHP version the site is served with via ``.php-version``."""

    def handle(self, context: ProvisionContext, logger: ProvisionLogger) -> StepResult:
        version = context.php_version or self._detect(context)
        context.path(".php-version").write_text(f"{version}\n", encoding="utf-8")
        logger.log(f"Wrote .php-version ({version})")
        return StepResult.succeeded({"php_version": version})

    @staticmethod
    def _detect(context: ProvisionContext) -> str:
        constraint = (read_json(context.path("composer.json")).get("require") or {}).get("php")
        if not isinstance(constraint, str):
            return DEFAULT_PHP_VERSION
        match = _PHP_CONSTRAINT_RE.search(constraint)
        if not match:
            return DEFAULT_PHP_VERSION
        requested = (int(match.group(1)), int(match.group(2)))
        for candidate in reversed(SUPPORTED_PHP_VERSIONS):
            if requested >= tuple(int(p) for p in candidate.split(".")):
                return candidate
        return DEFAULT_PHP_VERSION


_MIDDLEWARE_RE = re.compile(r"->withMiddleware\(function \(Middleware \$middleware\)(?:: void)? \{\n?")
_PLACEHOLDER_RE = re.compile(r"^[ \t]*//[ \t]*\n", re.MULTILINE)
_USE_RE = re.compile(r"^use [^;]+;\n", re.MULTILINE)

REQUEST_IMPORT = "use Illuminate\\Http\\Request;"
TRUST_PROXIES = (
    "        $middleware->trustProxies(at: '*', headers: Request::HEADER_X_FORWARDED_FOR |\n"
    "            Request::HEADER_X_FORWARDED_HOST |\n"
    "            Request::HEADER_X_FORWARDED_PORT |\n"
    "            Request::HEADER_X_FORWARDED_PROTO\n"
    "        );\n"
)


class ConfigureTrustedProxies:
    """Trust the local reverse proxy's forwarded headers in a Laravel 11+ bootstrap file."""

    def handle(self, context: ProvisionContext, logger: ProvisionLogger) -> StepResult:
        bootstrap = context.path("bootstrap", "app.php")
        if not bootstrap.exists():
            logger.log("No bootstrap/app.php found, skipping trusted proxies")
            return StepResult.succeeded({"configured": False})

        content = bootstrap.read_text(encoding="utf-8")
        if "Application::configure" not in content:
            logger.log("bootstrap/app.php predates Application::configure, skipping trusted proxies")
            return StepResult.succeeded({"configured": False})
        if "trustProxies" in content:
            logger.log("Trusted proxies already configured")
            return StepResult.succeeded({"configured": False})

        match = _MIDDLEWARE_RE.search(content)
        if not match:
            logger.warn("No withMiddleware callback in bootstrap/app.php, skipping trusted proxies")
            return StepResult.succeeded({"configured": False})

        body_start = match.end()
        body = content[body_start:]
        placeholder = _PLACEHOLDER_RE.match(body)
        if placeholder:
            body = body[placeholder.end():]
        content = content[:body_start] + TRUST_PROXIES + body

        if REQUEST_IMPORT not in content:
            imports = list(_USE_RE.finditer(content))
            if imports:
                at = imports[-1].end()
                content = content[:at] + REQUEST_IMPORT + "\n" + content[at:]
            else:
                content = content.replace("<?php\n", f"<?php\n\n{REQUEST_IMPORT}\n", 1)

        bootstrap.write_text(content, encoding="utf-8")
        logger.info("Configured trusted proxies")
        return StepResult.succeeded({"configured": True})
