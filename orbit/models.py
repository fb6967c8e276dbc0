from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import field_validator
from sqlmodel import Field, SQLModel


class Phase(str, Enum):
    PROVISIONING = "provisioning"
    CREATING_REPO = "creating_repo"
    CLONING = "cloning"
    SETTING_UP = "setting_up"
    FINALIZING = "finalizing"
    READY = "ready"
    FAILED = "failed"
    # only ever reported by status inference, never entered by a pipeline
    NOT_FOUND = "not_found"

    @property
    def terminal(self) -> bool:
        return self in (Phase.READY, Phase.FAILED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProvisionStatusORM(SQLModel, table=True):
    __tablename__ = "provision_status"

    slug: str = Field(primary_key=True)
    status: str = Field(nullable=False)
    error: Optional[str] = Field(default=None)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)


class ProvisionStatusRead(SQLModel):
    slug: str
    status: Phase
    error: Optional[str] = None
    running: bool = False
    source: Literal["record", "log", "none"] = "none"
    updated_at: Optional[datetime] = None


class ProjectCreate(SQLModel):
    name: str = Field(min_length=1, max_length=255)
    template: Optional[str] = None
    clone_url: Optional[str] = None
    github_repo: Optional[str] = None
    fork: bool = False
    visibility: Literal["private", "public"] = "private"
    php_version: Optional[Literal["8.3", "8.4", "8.5"]] = None
    db_driver: Optional[Literal["mysql", "pgsql", "sqlite"]] = None
    session_driver: Optional[Literal["file", "database", "redis"]] = None
    cache_driver: Optional[Literal["file", "database", "redis"]] = None
    queue_driver: Optional[Literal["sync", "database", "redis"]] = None
    organization: Optional[str] = None
    path: Optional[str] = None
    minimal: bool = False

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class ProjectQueued(SQLModel):
    success: bool = True
    status: str = "queued"
    slug: str
    message: str
