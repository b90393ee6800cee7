"""FastAPI dependencies for the step routes."""

from fastapi import Request

from shipyard.steps.executor import StepExecutor


def get_executor(request: Request) -> StepExecutor:
    """Return the StepExecutor installed by the lifespan handler."""
    executor = getattr(request.app.state, "executor", None)
    if executor is None:
        raise RuntimeError("Step executor not initialized; lifespan has not run")
    return executor
