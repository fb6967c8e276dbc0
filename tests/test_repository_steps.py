from __future__ import annotations

import pytest

from orbit.provision.context import ProvisionContext
from orbit.provision.github import GitHubAdapter, repo_from_url
from orbit.provision.steps.repository import (
    CheckRepoAvailable,
    CloneRepository,
    CreateGitHubRepository,
    ForkRepository,
    target_repository,
)
from tests.fakes import RecordingRunner, completed


def _gh(existing: set[str] = frozenset(), *, fail: dict[str, str] | None = None):
    """Runner emulating ``gh``: repositories in ``existing`` resolve, the rest 404."""
    fail = fail or {}

    def respond(cmd, **kwargs):
        for prefix, error in fail.items():
            if " ".join(cmd).startswith(prefix):
                return completed(cmd, returncode=1, stderr=error)
        if cmd[:2] == ["gh", "api"] and cmd[2].startswith("repos/"):
            repo = cmd[2].removeprefix("repos/")
            if repo in existing:
                return completed(cmd, stdout=f"{repo}\n")
            return completed(cmd, returncode=1, stderr="gh: Not Found (HTTP 404)")
        if cmd[:3] == ["gh", "api", "user"]:
            return completed(cmd, stdout="octocat\n")
        if cmd[:3] == ["gh", "repo", "view"]:
            return completed(cmd, returncode=0 if cmd[3] in existing else 1)
        return completed(cmd)

    return RecordingRunner(respond)


@pytest.mark.parametrize(
    ("fields", "owner", "expected"),
    [
        ({"github_repo": "acme/explicit", "template": "t/t"}, "owner", "acme/explicit"),
        ({"template": "acme/starter"}, "owner", "owner/demo-app"),
        ({"clone_url": "git@github.com:someone/widget.git"}, "owner", "owner/demo-app"),
        ({"clone_url": "https://github.com/Owner/widget"}, "owner", None),
        ({"clone_url": "someone/widget", "fork": True}, "owner", "owner/widget"),
        ({"template": "acme/starter"}, None, None),
        ({}, "owner", None),
    ],
)
def test_target_repository_derivation(tmp_path, fields, owner, expected) -> None:
    context = ProvisionContext(slug="demo-app", project_path=tmp_path, **fields)
    assert target_repository(context, owner) == expected


def test_repo_from_url_handles_ssh_https_and_short_forms() -> None:
    assert repo_from_url("git@github.com:acme/app.git") == "acme/app"
    assert repo_from_url("https://github.com/acme/app") == "acme/app"
    assert repo_from_url("acme/app.git") == "acme/app"
    assert repo_from_url(None) == ""


def test_check_repo_available_succeeds_when_remote_missing(tmp_path, plog, config) -> None:
    runner = _gh()
    context = ProvisionContext(slug="demo-app", project_path=tmp_path, template="acme/starter")

    result = CheckRepoAvailable(GitHubAdapter(runner=runner)).handle(context, plog, config)

    assert result.is_success
    assert result.data["repo"] == "owner/demo-app"
    assert ["gh", "api", "repos/owner/demo-app", "--jq", ".full_name"] in runner.commands


def test_check_repo_available_fails_closed_when_remote_exists(tmp_path, plog, config) -> None:
    runner = _gh({"owner/demo-app"})
    context = ProvisionContext(slug="demo-app", project_path=tmp_path, template="acme/starter")

    result = CheckRepoAvailable(GitHubAdapter(runner=runner)).handle(context, plog, config)

    assert result.is_failed
    assert "already exists" in result.error
    assert "owner/demo-app" in result.error


def test_check_repo_available_prefers_organization_over_username(tmp_path, plog, config) -> None:
    runner = _gh({"owner/demo-app"})
    context = ProvisionContext(slug="demo-app", project_path=tmp_path, template="acme/starter", organization="acme")

    result = CheckRepoAvailable(GitHubAdapter(runner=runner)).handle(context, plog, config)

    assert result.is_success
    assert result.data["repo"] == "acme/demo-app"


def test_check_repo_available_resolves_and_caches_username(tmp_path, plog, config) -> None:
    config.set("github_username", None)
    runner = _gh()
    context = ProvisionContext(slug="demo-app", project_path=tmp_path, template="acme/starter")

    result = CheckRepoAvailable(GitHubAdapter(runner=runner)).handle(context, plog, config)

    assert result.data["repo"] == "octocat/demo-app"
    assert config.get("github_username") == "octocat"


def test_check_repo_available_skips_without_remote_side_effects(tmp_path, plog, config) -> None:
    runner = _gh()
    context = ProvisionContext(slug="demo-app", project_path=tmp_path)

    result = CheckRepoAvailable(GitHubAdapter(runner=runner)).handle(context, plog, config)

    assert result.is_success
    assert runner.calls == []


def test_create_repository_from_template(tmp_path, plog) -> None:
    runner = _gh()
    context = ProvisionContext(slug="demo-app", project_path=tmp_path, template="acme/starter", visibility="public")

    result = CreateGitHubRepository(GitHubAdapter(runner=runner), propagation_delay=0).handle(
        context, plog, "owner/demo-app"
    )

    assert result.is_success
    assert result.data == {"repo": "owner/demo-app", "clone_url": "owner/demo-app"}
    assert [
        "gh", "repo", "create", "owner/demo-app", "--public", "--template", "acme/starter", "--clone=false"
    ] in runner.commands
    assert "Creating GitHub repository: owner/demo-app" in plog.read()


def test_create_repository_reports_gh_error(tmp_path, plog) -> None:
    runner = _gh(fail={"gh repo create": "GraphQL: Name already exists on this account"})
    context = ProvisionContext(slug="demo-app", project_path=tmp_path, template="acme/starter")

    result = CreateGitHubRepository(GitHubAdapter(runner=runner), propagation_delay=0).handle(
        context, plog, "owner/demo-app"
    )

    assert result.is_failed
    assert result.error.startswith("Failed to create GitHub repository")
    assert "Name already exists" in result.error


def test_create_repository_requires_template(tmp_path, plog) -> None:
    context = ProvisionContext(slug="demo-app", project_path=tmp_path)

    result = CreateGitHubRepository(GitHubAdapter(runner=_gh()), propagation_delay=0).handle(
        context, plog, "owner/demo-app"
    )

    assert result.is_failed
    assert "No template" in result.error


def test_fork_repository_returns_fork_under_owner(tmp_path, plog, config) -> None:
    runner = _gh()
    context = ProvisionContext(
        slug="demo-app", project_path=tmp_path, clone_url="https://github.com/laravel/laravel.git", fork=True
    )

    result = ForkRepository(GitHubAdapter(runner=runner), propagation_delay=0).handle(context, plog, config)

    assert result.is_success
    assert result.data["clone_url"] == "owner/laravel"
    assert ["gh", "repo", "fork", "laravel/laravel", "--clone=false"] in runner.commands


def test_fork_repository_failure_is_reported(tmp_path, plog, config) -> None:
    runner = _gh(fail={"gh repo fork": "HTTP 403: forbidden"})
    context = ProvisionContext(slug="demo-app", project_path=tmp_path, clone_url="laravel/laravel", fork=True)

    result = ForkRepository(GitHubAdapter(runner=runner), propagation_delay=0).handle(context, plog, config)

    assert result.is_failed
    assert "forbidden" in result.error


def test_clone_requires_a_reference(tmp_path, plog) -> None:
    context = ProvisionContext(slug="demo-app", project_path=tmp_path / "demo-app")

    result = CloneRepository(GitHubAdapter(runner=_gh())).handle(context, plog)

    assert result.is_failed
    assert "No clone URL provided" in result.error


def test_clone_refuses_non_empty_directory(tmp_path, plog) -> None:
    target = tmp_path / "demo-app"
    target.mkdir()
    (target / "existing-file.txt").write_text("content")
    runner = _gh()
    context = ProvisionContext(slug="demo-app", project_path=target, clone_url="owner/repo")

    result = CloneRepository(GitHubAdapter(runner=runner)).handle(context, plog)

    assert result.is_failed
    assert "not empty" in result.error
    assert runner.calls == []


def test_clone_replaces_empty_placeholder_and_uses_gh_for_owner_repo(tmp_path, plog) -> None:
    target = tmp_path / "demo-app"
    target.mkdir()
    runner = _gh()
    context = ProvisionContext(slug="demo-app", project_path=target, clone_url="acme/starter")

    result = CloneRepository(GitHubAdapter(runner=runner)).handle(context, plog)

    assert result.is_success
    assert not target.exists()
    assert runner.commands == [["gh", "repo", "clone", "acme/starter", str(target)]]


def test_clone_uses_git_for_urls_and_prefers_derived_reference(tmp_path, plog) -> None:
    runner = _gh()
    target = tmp_path / "demo-app"
    context = ProvisionContext(slug="demo-app", project_path=target, clone_url="acme/ignored")

    CloneRepository(GitHubAdapter(runner=runner)).handle(context, plog, "https://git.example.com/a/b.git")

    assert runner.commands == [["git", "clone", "https://git.example.com/a/b.git", str(target)]]
    assert runner.calls[0]["timeout"] == 300


def test_clone_failure_carries_git_error(tmp_path, plog) -> None:
    runner = _gh(fail={"gh repo clone": "GraphQL: Could not resolve to a Repository"})
    context = ProvisionContext(slug="demo-app", project_path=tmp_path / "demo-app", clone_url="nonexistent/repo")

    result = CloneRepository(GitHubAdapter(runner=runner)).handle(context, plog)

    assert result.is_failed
    assert "Could not resolve to a Repository" in result.error
