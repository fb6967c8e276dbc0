from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Literal

Visibility = Literal["private", "public"]

_SYSTEM_PATH = ("/opt/homebrew/bin", "/usr/local/bin", "/usr/bin", "/bin")


@dataclass(frozen=True)
class ProvisionContext:
    """Everything a provisioning run knows up front.

    Built once per invocation and handed to every step by reference.
    """

    slug: str
    project_path: Path
    github_repo: str | None = None
    clone_url: str | None = None
    template: str | None = None
    visibility: Visibility = "private"
    php_version: str | None = None
    db_driver: str | None = None
    session_driver: str | None = None
    cache_driver: str | None = None
    queue_driver: str | None = None
    minimal: bool = False
    fork: bool = False
    display_name: str | None = None
    tld: str = "ccc"
    organization: str | None = None

    def __post_init__(self) -> None:
        if self.visibility not in ("private", "public"):
            raise ValueError(f"visibility must be 'private' or 'public', got {self.visibility!r}")
        if not isinstance(self.project_path, Path):
            object.__setattr__(self, "project_path", Path(self.project_path))

    @property
    def domain(self) -> str:
        return f"{self.slug}.{self.tld}"

    @property
    def app_name(self) -> str:
        return self.display_name or self.slug

    def home_dir(self) -> Path:
        return Path(os.environ.get("HOME") or "/home/orbit")

    def clean_env(self) -> dict[str, str]:
        """Environment for target-runtime commands.

        Only HOME and a fixed PATH are passed; anything inherited from this
        process (APP_KEY, tokens, config) stays out of the provisioned project.
        """
        home = self.home_dir()
        search_path = [str(home / ".config" / "herd-lite" / "bin"), str(home / ".local" / "bin"), *_SYSTEM_PATH]
        return {"HOME": str(home), "PATH": ":".join(search_path)}

    def github_owner(self, fallback: str | None) -> str | None:
        return self.organization or fallback

    def path(self, *parts: str) -> Path:
        return self.project_path.joinpath(*parts)
