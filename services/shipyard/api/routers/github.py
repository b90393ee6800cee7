"""GitHub passthrough endpoints.

Endpoints:
    GET /api/github/repos?host=&username=&applicationName=   (repositories visible to the stored token)
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.db.session import get_db
from shipyard.errors import NotFoundError, PreconditionError
from shipyard.logging_config import get_logger
from shipyard.services import application_service, github_service
from shipyard.services.application_service import ApplicationKey

router = APIRouter(prefix="/github", tags=["github"])
logger = get_logger(__name__)


@router.get("/repos")
async def list_repositories(
    host: str = Query(min_length=1),
    username: str = Query(min_length=1),
    application_name: str = Query(alias="applicationName", min_length=1),
    db: AsyncSession = Depends(get_db),
) -> dict:
    app = await application_service.get_application(
        db, ApplicationKey(host, username, application_name)
    )
    if app is None:
        raise NotFoundError("Application not found. Please verify connection first.")
    token = application_service.github_token_of(app)
    if not token:
        raise PreconditionError("GitHub token missing. Please authenticate GitHub first.")

    repositories = [asdict(repo) async for repo in github_service.list_repositories(token)]
    logger.info("Listed repositories", application=application_name, count=len(repositories))
    return {
        "success": True,
        "selectedRepo": app.selected_repo,
        "repositories": repositories,
    }
