from __future__ import annotations

import logging
from typing import Callable

from fastapi import APIRouter, Depends, HTTPException, status

from orbit.models import ProjectCreate, ProjectQueued, ProvisionStatusRead
from orbit.provision.launcher import launch_detached
from orbit.provision.naming import is_valid_slug, slugify, validate_slug
from orbit.provision.status import StatusReader, StatusStore
from orbit.services.errors import ProvisionException

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projects", tags=["projects"])

Launcher = Callable[[str, dict[str, object]], int]


def get_status_reader() -> StatusReader:
    return StatusReader(store=StatusStore())


def get_launcher() -> Launcher:
    return launch_detached


@router.post("", response_model=ProjectQueued, status_code=status.HTTP_202_ACCEPTED)
def create_project(
    payload: ProjectCreate,
    reader: StatusReader = Depends(get_status_reader),
    launch: Launcher = Depends(get_launcher),
) -> ProjectQueued:
    slug = slugify(payload.name)
    if not is_valid_slug(slug):
        raise HTTPException(status_code=422, detail=f"Cannot derive a project slug from {payload.name!r}")
    validate_slug(slug)
    if reader.is_running(slug):
        raise ProvisionException(f"Project {slug} is already being provisioned")

    options = payload.model_dump(exclude={"name"})
    options["display_name"] = payload.name
    pid = launch(slug, options)
    logger.info("Queued provisioning slug=%s pid=%s", slug, pid)
    return ProjectQueued(slug=slug, message="Project creation has been queued.")


@router.get("/{slug}/provision-status", response_model=ProvisionStatusRead)
def provision_status(slug: str, reader: StatusReader = Depends(get_status_reader)) -> ProvisionStatusRead:
    if not is_valid_slug(slug):
        raise HTTPException(status_code=422, detail=f"Invalid project slug {slug!r}")
    return reader.status(slug)
