from __future__ import annotations

import json
import logging
from typing import Optional

import typer
import yaml
from fastapi.encoders import jsonable_encoder

from orbit.config import ConfigManager, config_dir
from orbit.logging_config import configure_logging
from orbit.models import Phase
from orbit.provision.broadcast import ReverbBroadcaster
from orbit.provision.cancel import CancellationToken, install_signal_handlers
from orbit.provision.launcher import launch_detached
from orbit.provision.naming import validate_slug
from orbit.provision.pipeline import ProvisionPipeline, build_context
from orbit.provision.proxy import CaddyReloader
from orbit.provision.registry import McpClient
from orbit.provision.status import StatusReader, StatusStore
from orbit.services.errors import ConfigurationException, OrbitException

configure_logging()
logger = logging.getLogger(__name__)
app = typer.Typer(help="Orbit project provisioning", pretty_exceptions_show_locals=False)


def _exit_for_domain_error(exc: OrbitException) -> None:
    logger.warning("CLI command failed with domain error: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


def _echo_yaml_entity(entity: object) -> None:
    encoded = jsonable_encoder(entity)
    typer.echo(yaml.safe_dump(encoded, sort_keys=False), nl=False)


def build_pipeline(config: ConfigManager, cancel: CancellationToken) -> ProvisionPipeline:
    return ProvisionPipeline(
        config=config,
        broadcaster=ReverbBroadcaster.from_config(config),
        mcp=McpClient.from_config(config),
        proxy=CaddyReloader.from_config(config),
        store=StatusStore(),
        cancel=cancel,
    )


def build_status_reader() -> StatusReader:
    return StatusReader(store=StatusStore())


@app.command("provision")
def provision(
    slug: str,
    *,
    github_repo: Optional[str] = typer.Option(None, "--github-repo", help="Repository to create (owner/name)."),
    clone_url: Optional[str] = typer.Option(None, "--clone-url", help="Existing repository to clone."),
    template: Optional[str] = typer.Option(None, "--template", help="Template repository (owner/name)."),
    visibility: str = typer.Option("private", "--visibility", help="private or public."),
    fork: bool = typer.Option(False, "--fork", help="Fork --clone-url instead of cloning it directly."),
    organization: Optional[str] = typer.Option(None, "--organization"),
    php_version: Optional[str] = typer.Option(None, "--php-version"),
    db_driver: Optional[str] = typer.Option(None, "--db-driver"),
    session_driver: Optional[str] = typer.Option(None, "--session-driver"),
    cache_driver: Optional[str] = typer.Option(None, "--cache-driver"),
    queue_driver: Optional[str] = typer.Option(None, "--queue-driver"),
    display_name: Optional[str] = typer.Option(None, "--display-name"),
    path: Optional[str] = typer.Option(None, "--path", help="Target directory (defaults to first configured path)."),
    minimal: bool = typer.Option(False, "--minimal", help="Skip JavaScript dependencies and asset build."),
    detach: bool = typer.Option(False, "--detach", help="Run in the background and return immediately."),
) -> None:
    """Provision a project: create or fork its repository, clone, set up, register."""
    try:
        validate_slug(slug)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    except OrbitException as e:
        _exit_for_domain_error(e)

    options = {
        "github_repo": github_repo,
        "clone_url": clone_url,
        "template": template,
        "visibility": visibility,
        "fork": fork,
        "organization": organization,
        "php_version": php_version,
        "db_driver": db_driver,
        "session_driver": session_driver,
        "cache_driver": cache_driver,
        "queue_driver": queue_driver,
        "display_name": display_name,
        "path": path,
        "minimal": minimal,
    }
    if detach:
        pid = launch_detached(slug, options)
        _echo_yaml_entity({"slug": slug, "status": "queued", "pid": pid})
        return

    configure_logging(log_file=config_dir() / "logs" / "provision.log", force=True)
    try:
        config = ConfigManager()
    except ConfigurationException as e:
        _exit_for_domain_error(e)

    cancel = CancellationToken()
    pipeline = build_pipeline(config, cancel)
    restore = install_signal_handlers(cancel)
    try:
        try:
            context = build_context(config, slug, **options)
        except (ConfigurationException, ValueError) as e:
            raise typer.Exit(code=pipeline.abort(slug, str(e)))
        exit_code = pipeline.run(context)
    finally:
        restore()

    if exit_code != 0:
        typer.echo(f"Error: Provisioning failed for {slug}", err=True)
        raise typer.Exit(code=exit_code)
    typer.echo(f"Project {slug} provisioned successfully!")


@app.command("provision-status")
def provision_status(
    slug: str,
    as_json: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Report the provisioning phase of a project, even after its run exited."""
    try:
        status = build_status_reader().status(slug)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    data = {"status": status.status.value, "error": status.error}

    if as_json:
        typer.echo(json.dumps({"success": True, "data": data}, indent=4))
    else:
        _echo_yaml_entity(status)

    if status.status == Phase.FAILED:
        raise typer.Exit(code=1)


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8001, "--port"),
) -> None:
    """Serve the HTTP API."""
    import uvicorn

    uvicorn.run("orbit.main:app", host=host, port=port, log_level="info")


if __name__ == "__main__":
    app()
