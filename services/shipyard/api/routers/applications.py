"""Application registry endpoints.

Endpoints:
    GET  /api/applications                          (list)
    GET  /api/applications/{id}                     (show, with step statuses)
    POST /api/applications/{id}/select-repo         (remember the repository)
    GET  /api/applications/{id}/database-config     (show, password omitted)
    POST /api/applications/{id}/database-config     (replace)
"""

import uuid

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.config import settings
from shipyard.db.models import Application
from shipyard.db.session import get_db
from shipyard.errors import NotFoundError, ValidationError
from shipyard.logging_config import get_logger
from shipyard.services import application_service, github_service, step_log_service
from shipyard.services.application_service import DatabaseSettings
from shipyard.services.lease_service import application_lease, lease_key
from shipyard.steps.base import DbType, RequiredStr

router = APIRouter(tags=["applications"])
logger = get_logger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SelectRepoBody(_CamelModel):
    selected_repo: RequiredStr


class DatabaseConfigBody(_CamelModel):
    db_type: DbType
    db_name: RequiredStr
    db_username: RequiredStr
    db_password: str | None = None
    db_port: int | None = Field(default=None, ge=1, le=65535)


async def _get_or_404(db: AsyncSession, application_id: uuid.UUID) -> Application:
    app = await application_service.get_application_by_id(db, application_id)
    if app is None:
        raise NotFoundError("Application not found")
    return app


def _lease(app: Application):
    """The lease steps take, so edits never interleave with a running step."""
    config = settings.executor
    return application_lease(
        lease_key(app.host, app.username, app.application_name),
        ttl_seconds=config.lease_ttl_seconds,
        wait_seconds=config.lease_wait_seconds,
        poll_interval=config.lease_poll_interval_seconds,
    )


@router.get("/applications")
async def list_applications(
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> dict:
    apps = await application_service.list_applications(db, limit=limit, offset=offset)
    return {
        "success": True,
        "applications": [application_service.application_to_dict(a) for a in apps],
    }


@router.get("/applications/{application_id}")
async def get_application(application_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> dict:
    app = await _get_or_404(db, application_id)
    return {
        "success": True,
        "application": application_service.application_to_dict(app),
        "steps": await step_log_service.latest_step_statuses(db, app.id),
    }


@router.post("/applications/{application_id}/select-repo")
async def select_repo(
    application_id: uuid.UUID,
    body: SelectRepoBody,
    db: AsyncSession = Depends(get_db),
) -> dict:
    app = await _get_or_404(db, application_id)
    parsed = github_service.parse_repo(body.selected_repo)
    if parsed is None:
        raise ValidationError("Invalid repository format. Use owner/repo or GitHub URL.")
    repository = "/".join(parsed)
    async with _lease(app):
        await application_service.set_selected_repo(db, app.id, repository)
        await db.commit()
    logger.info("Repository selected", application_id=str(app.id), repository=repository)
    return {"success": True, "selectedRepo": repository}


@router.get("/applications/{application_id}/database-config")
async def get_database_config(application_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> dict:
    app = await _get_or_404(db, application_id)
    config = await application_service.get_database_config(db, app.id)
    return {"success": True, "databaseConfig": application_service.database_config_to_dict(config)}


@router.post("/applications/{application_id}/database-config")
async def save_database_config(
    application_id: uuid.UUID,
    body: DatabaseConfigBody,
    db: AsyncSession = Depends(get_db),
) -> dict:
    app = await _get_or_404(db, application_id)
    async with _lease(app):
        await application_service.save_database_config(
            db,
            app.id,
            DatabaseSettings(
                db_type=body.db_type,
                db_name=body.db_name,
                db_username=body.db_username,
                db_password=body.db_password,
                db_port=body.db_port,
            ),
        )
        await db.commit()
    return {"success": True, "message": "Database configuration saved"}
