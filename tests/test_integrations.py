from __future__ import annotations

import subprocess
import sys

import pytest
import requests

from orbit.config import ConfigManager
from orbit.proc import CommandError
from orbit.provision.launcher import launch_detached, provision_command
from orbit.provision.proxy import CaddyReloader
from orbit.provision.registry import McpClient, RegistrationError
from orbit.services.errors import ConfigurationException
from tests.fakes import RecordingRunner, completed


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None) -> None:
        self.response = response
        self.error = error
        self.posts: list[dict] = []

    def post(self, url, **kwargs):
        self.posts.append({"url": url, **kwargs})
        if self.error:
            raise self.error
        return self.response


def test_config_dotted_access_and_persistence(tmp_path):
    path = tmp_path / "config.json"
    manager = ConfigManager(path)

    manager.set("reverb.app_key", "abc")

    assert manager.get("reverb.app_key") == "abc"
    assert manager.get("reverb.missing", "fallback") == "fallback"
    assert ConfigManager(path).get("reverb") == {"app_key": "abc"}
    assert manager.get_tld() == "ccc"
    assert manager.is_service_enabled("reverb") is False


def test_config_rejects_invalid_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")

    with pytest.raises(ConfigurationException):
        ConfigManager(path)


def test_register_project_sends_json_rpc_tool_call():
    session = FakeSession(FakeResponse(payload={"jsonrpc": "2.0", "result": {"content": [{"type": "text"}]}}))
    client = McpClient("http://localhost:8000/", session=session)

    client.register_project(slug="blog", local_path="/srv/blog", github_repo="owner/blog", name="Blog")

    post = session.posts[0]
    assert post["url"] == "http://localhost:8000/mcp"
    assert post["json"]["method"] == "tools/call"
    assert post["json"]["params"] == {
        "name": "create-project",
        "arguments": {"name": "Blog", "slug": "blog", "local_path": "/srv/blog", "github_repo": "owner/blog"},
    }


def test_registry_surfaces_rpc_errors():
    session = FakeSession(FakeResponse(payload={"jsonrpc": "2.0", "error": {"code": -32000, "message": "duplicate slug"}}))

    with pytest.raises(RegistrationError, match="duplicate slug"):
        McpClient("http://localhost:8000", session=session).call_tool("create-project")


def test_registry_wraps_transport_errors():
    session = FakeSession(error=requests.ConnectionError("refused"))

    with pytest.raises(RegistrationError, match="refused"):
        McpClient("http://localhost:8000", session=session).call_tool("create-project")


def test_registry_unconfigured():
    client = McpClient(None)

    assert client.is_configured() is False
    with pytest.raises(RegistrationError):
        client.call_tool("create-project")


def test_proxy_reload_runs_configured_commands(config):
    config.set("caddy.reload_commands", [["caddy", "reload"], ["true"]])
    runner = RecordingRunner()

    CaddyReloader.from_config(config, runner=runner).reload()

    assert runner.commands == [["caddy", "reload"], ["true"]]


def test_proxy_reload_failure_raises():
    runner = RecordingRunner(lambda cmd, **kw: completed(cmd, returncode=1, stderr="admin endpoint unreachable"))

    with pytest.raises(CommandError) as exc_info:
        CaddyReloader([["caddy", "reload"]], runner=runner).reload()

    assert exc_info.value.detail == "admin endpoint unreachable"


def test_provision_command_renders_flags():
    command = provision_command(
        "blog",
        {"template": "acme/starter", "fork": False, "minimal": True, "php_version": None, "display_name": "My Blog"},
    )

    assert command == [
        sys.executable, "-m", "orbit.cli", "provision", "blog",
        "--template", "acme/starter", "--minimal", "--display-name", "My Blog",
    ]


def test_launch_detached_starts_new_session(log_dir):
    spawned = []

    class FakeProcess:
        pid = 4242

    def spawner(command, **kwargs):
        spawned.append((command, kwargs))
        return FakeProcess()

    pid = launch_detached("blog", {"template": "acme/starter"}, log_directory=log_dir, spawner=spawner)

    assert pid == 4242
    command, kwargs = spawned[0]
    assert command[3:5] == ["provision", "blog"]
    assert kwargs["start_new_session"] is True
    assert kwargs["stderr"] is subprocess.STDOUT
    assert (log_dir / "provision-blog.out").exists()
