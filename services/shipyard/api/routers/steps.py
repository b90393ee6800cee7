"""Provisioning step endpoints and step history.

Every POST runs exactly one step through the executor and answers with the
step's result: 200 on success, 500 (or a 4xx for bad input and missing
prerequisites) on failure.

Endpoints:
    POST /api/step/check-github-token
    POST /api/step/deploy-key
    POST /api/step/database-create
    POST /api/step/folder-setup
    POST /api/step/env-setup
    POST /api/step/env-update
    POST /api/step/ssh-key-setup
    POST /api/step/deploy-workflow-update
    GET  /api/steps/{host}/{username}/{application_name}   (history)
"""

from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.api.dependencies import get_executor
from shipyard.db.session import get_db
from shipyard.errors import NotFoundError
from shipyard.logging_config import get_logger
from shipyard.services import application_service, step_log_service
from shipyard.services.application_service import ApplicationKey
from shipyard.steps.executor import StepExecutor

router = APIRouter(tags=["steps"])
logger = get_logger(__name__)

Payload = dict[str, Any]


async def _run(executor: StepExecutor, step_name: str, payload: Payload) -> JSONResponse:
    outcome = await executor.run(step_name, payload)
    return JSONResponse(status_code=outcome.http_status, content=outcome.to_response())


@router.post("/step/check-github-token")
async def check_github_token(
    payload: Payload = Body(default_factory=dict),
    executor: StepExecutor = Depends(get_executor),
) -> JSONResponse:
    return await _run(executor, "check-github-token", payload)


@router.post("/step/deploy-key")
async def deploy_key(
    payload: Payload = Body(default_factory=dict),
    executor: StepExecutor = Depends(get_executor),
) -> JSONResponse:
    return await _run(executor, "deploy-key-generation", payload)


@router.post("/step/database-create")
async def database_create(
    payload: Payload = Body(default_factory=dict),
    executor: StepExecutor = Depends(get_executor),
) -> JSONResponse:
    return await _run(executor, "database-create", payload)


@router.post("/step/folder-setup")
async def folder_setup(
    payload: Payload = Body(default_factory=dict),
    executor: StepExecutor = Depends(get_executor),
) -> JSONResponse:
    return await _run(executor, "folder-setup", payload)


@router.post("/step/env-setup")
async def env_setup(
    payload: Payload = Body(default_factory=dict),
    executor: StepExecutor = Depends(get_executor),
) -> JSONResponse:
    return await _run(executor, "env-setup", payload)


@router.post("/step/env-update")
async def env_update(
    payload: Payload = Body(default_factory=dict),
    executor: StepExecutor = Depends(get_executor),
) -> JSONResponse:
    return await _run(executor, "env-update", payload)


@router.post("/step/ssh-key-setup")
async def ssh_key_setup(
    payload: Payload = Body(default_factory=dict),
    executor: StepExecutor = Depends(get_executor),
) -> JSONResponse:
    return await _run(executor, "ssh-key-setup", payload)


@router.post("/step/deploy-workflow-update")
async def deploy_workflow_update(
    payload: Payload = Body(default_factory=dict),
    executor: StepExecutor = Depends(get_executor),
) -> JSONResponse:
    return await _run(executor, "deploy-workflow-update", payload)


@router.get("/steps/{host}/{username}/{application_name}")
async def list_steps(
    host: str,
    username: str,
    application_name: str,
    db: AsyncSession = Depends(get_db),
) -> dict:
    app = await application_service.get_application(
        db, ApplicationKey(host, username, application_name)
    )
    if app is None:
        raise NotFoundError("Application not found")

    logs = await step_log_service.list_step_logs(db, app.id)
    return {
        "success": True,
        "applicationId": str(app.id),
        "applicationName": application_name,
        "host": host,
        "username": username,
        "steps": [step_log_service.step_log_to_dict(log) for log in logs],
        "current": step_log_service.current_statuses(logs),
    }
