"""Connection verification endpoint.

Endpoints:
    POST /api/connection/verify   (check SSH + GitHub, register the application)
"""

from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from shipyard.api.dependencies import get_executor
from shipyard.logging_config import get_logger
from shipyard.steps.executor import StepExecutor

router = APIRouter(tags=["connection"])
logger = get_logger(__name__)


@router.post("/connection/verify")
async def verify_connection(
    payload: dict[str, Any] = Body(default_factory=dict),
    executor: StepExecutor = Depends(get_executor),
) -> JSONResponse:
    outcome = await executor.run("connection-verify", payload)
    result = outcome.result
    content = {"success": result.success, "message": result.message, **(result.data or {})}
    if not result.data:
        content["error"] = result.message
    return JSONResponse(status_code=outcome.http_status, content=content)
