"""Step executor.

Runs one named step for one application:

1. validate the request against the step's input model (400, nothing logged)
2. take the application's lease (409 when it stays busy)
3. resolve the application (404 when a step needs it and it is absent)
4. check preconditions (400, logged as a failed step)
5. execute under the step's retry policy, normalizing every error
6. append exactly one StepLog row
7. hand back a StepOutcome

Apart from a failed precondition, which is logged and re-raised, nothing
raised inside check() or execute() escapes raw; it becomes a failed StepResult.
"""

import asyncio
import time
from typing import Any

import pydantic
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipyard.config import Settings
from shipyard.db.models import Application
from shipyard.errors import (
    HostingApiError,
    NotFoundError,
    PreconditionError,
    RemoteConnectionError,
    ShipyardError,
    ValidationError,
)
from shipyard.logging_config import get_logger
from shipyard.services import application_service, step_log_service
from shipyard.services.application_service import ApplicationKey
from shipyard.services.lease_service import application_lease, lease_key
from shipyard.steps.base import Step, StepContext, StepInput, StepOutcome, StepResult
from shipyard.steps.registry import get_step, load_steps

logger = get_logger(__name__)

_MISSING_ERROR_TYPES = {"missing", "string_too_short"}


def validate_input(step: Step, payload: dict[str, Any] | None) -> StepInput:
    """Validate a request body, reporting absent fields by their wire names."""
    try:
        return step.input_model.model_validate(payload or {})
    except pydantic.ValidationError as e:
        missing: list[str] = []
        invalid: list[str] = []
        for err in e.errors():
            name = ".".join(str(part) for part in err["loc"])
            if err["type"] in _MISSING_ERROR_TYPES:
                missing.append(name)
            else:
                invalid.append(f"{name} ({err['msg']})")
        if missing:
            raise ValidationError(
                "Missing required fields: " + ", ".join(missing), missing=missing
            ) from None
        raise ValidationError("Invalid fields: " + "; ".join(invalid)) from None


def is_retriable(error: BaseException) -> bool:
    if isinstance(error, RemoteConnectionError):
        return True
    if isinstance(error, HostingApiError):
        return error.retriable
    return False


def failure_result(error: Exception) -> StepResult:
    """Normalize an exception into a failed StepResult."""
    if isinstance(error, ShipyardError):
        detail = {"error_type": type(error).__name__, **error.detail}
        return StepResult.failed(error.message, detail=detail)
    message = str(error) or type(error).__name__
    return StepResult.failed(message, detail={"error_type": type(error).__name__})


class StepExecutor:
    """Executes registered steps against the application registry."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings
        load_steps()

    async def run(self, step_name: str, payload: dict[str, Any] | None) -> StepOutcome:
        step = get_step(step_name)
        params = validate_input(step, payload)
        key = params.key
        log = logger.bind(step=step_name, application=str(key))

        executor_config = self.settings.executor
        async with application_lease(
            lease_key(key.host, key.username, key.application_name),
            ttl_seconds=executor_config.lease_ttl_seconds,
            wait_seconds=executor_config.lease_wait_seconds,
            poll_interval=executor_config.lease_poll_interval_seconds,
        ):
            application = await self._resolve(key)
            if application is None and step.requires_application:
                log.info("Step rejected, application not found")
                raise NotFoundError("Application not found. Please verify connection first.")

            ctx = StepContext(step_name, params, application, self.session_factory, self.settings)
            started = time.monotonic()

            try:
                await step.check(ctx)
            except PreconditionError as e:
                log.info("Step precondition failed", error=e.message)
                await self._record(ctx, failure_result(e), _elapsed_ms(started), attempts=0)
                raise
            except Exception as e:
                log.exception("Step precondition check raised unexpected error")
                result, attempts, http_status = failure_result(e), 0, 500
            else:
                log.info("Step started")
                result, attempts, http_status = await self._execute(step, ctx, log)
            duration_ms = _elapsed_ms(started)
            await self._record(ctx, result, duration_ms, attempts)

        log.info(
            "Step finished",
            success=result.success,
            attempts=attempts,
            duration_ms=duration_ms,
        )
        return StepOutcome(
            step=step_name,
            result=result,
            application_id=ctx.application_id,
            http_status=http_status,
            attempts=attempts,
            duration_ms=duration_ms,
        )

    async def _resolve(self, key: ApplicationKey) -> Application | None:
        async with self.session_factory() as db:
            return await application_service.get_application(db, key)

    async def _execute(self, step: Step, ctx: StepContext, log) -> tuple[StepResult, int, int]:
        """Run execute() under the retry policy. Returns (result, attempts, http_status)."""
        policy = self.settings.executor.retry_policy(step.name)
        delay = policy.backoff_seconds
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await step.execute(ctx)
            except ShipyardError as e:
                if attempt < policy.max_attempts and is_retriable(e):
                    log.warning(
                        "Step attempt failed, retrying",
                        attempt=attempt,
                        max_attempts=policy.max_attempts,
                        retry_in_seconds=delay,
                        error=e.message,
                    )
                    await asyncio.sleep(delay)
                    delay *= policy.backoff_multiplier
                    continue
                log.warning("Step failed", error=e.message, error_type=type(e).__name__)
                # Client errors (bad input, missing prerequisites) keep their status
                status = e.http_status if 400 <= e.http_status < 500 else step.failure_status
                return failure_result(e), attempt, status
            except Exception as e:
                log.exception("Step raised unexpected error")
                return failure_result(e), attempt, step.failure_status

            return result, attempt, 200 if result.success else step.failure_status

    async def _record(
        self, ctx: StepContext, result: StepResult, duration_ms: int, attempts: int
    ) -> None:
        """Append the step's StepLog row. A failing write is logged, not raised."""
        if ctx.application_id is None:
            logger.warning("No application to record step against", step=ctx.step_name)
            return

        detail = {**result.detail, "duration_ms": duration_ms, "attempts": attempts}
        status = step_log_service.STEP_SUCCESS if result.success else step_log_service.STEP_FAILED
        try:
            async with ctx.session() as db:
                await step_log_service.append_step_log(
                    db, ctx.application_id, ctx.step_name, status, result.message, detail
                )
        except Exception:
            logger.exception(
                "Failed to record step log",
                step=ctx.step_name,
                application_id=str(ctx.application_id),
            )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
