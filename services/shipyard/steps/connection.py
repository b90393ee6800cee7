"""Connection verification and GitHub token steps."""

import uuid
from typing import Annotated

from pydantic import Field, StringConstraints

from shipyard.errors import HostingApiError, PreconditionError, RemoteConnectionError
from shipyard.logging_config import get_logger
from shipyard.services import application_service, github_service
from shipyard.services.ssh_service import remote_session
from shipyard.steps.base import RequiredStr, Step, StepContext, StepInput, StepResult
from shipyard.steps.registry import register_step

logger = get_logger(__name__)


class ConnectionVerifyInput(StepInput):
    port: int = Field(default=22, ge=1, le=65535)
    # Not stripped: key material is passed through untouched
    private_key_content: Annotated[str, StringConstraints(min_length=1)]
    github_token: str | None = None


class GitHubTokenInput(StepInput):
    github_token: RequiredStr


@register_step
class ConnectionVerifyStep(Step):
    """Check SSH reachability (and the GitHub token, if given), then upsert the application.

    The application row is written whatever the outcome so that the attempt
    is recorded against it. success is ssh and (no token or github).
    """

    name = "connection-verify"
    input_model = ConnectionVerifyInput
    requires_application = False
    # Outcome is reported in the body; the request itself succeeded
    failure_status = 200

    async def execute(self, ctx: StepContext) -> StepResult:
        params: ConnectionVerifyInput = ctx.params
        ssh_settings = ctx.settings.ssh

        ssh = {
            "connected": False,
            "host": params.host,
            "username": params.username,
            "error": None,
        }
        try:
            async with remote_session(
                params.host,
                params.port,
                params.username,
                params.private_key_content,
                timeout=ssh_settings.connect_timeout_seconds,
                command_timeout=ssh_settings.command_timeout_seconds,
                known_hosts=ssh_settings.known_hosts,
            ):
                ssh["connected"] = True
        except RemoteConnectionError as e:
            ssh["error"] = e.message
            logger.warning("SSH verification failed", host=params.host, error=e.message)

        github = None
        github_username = None
        token = (params.github_token or "").strip() or None
        if token:
            github = {"connected": False, "username": None, "error": None}
            try:
                identity = await github_service.verify_token(token)
            except HostingApiError as e:
                github["error"] = e.message
                logger.warning("GitHub verification failed", status=e.status)
            else:
                github["connected"] = True
                github["username"] = github_username = identity.login

        success = ssh["connected"] and (github is None or github["connected"])

        async with ctx.session() as db:
            application_id = await application_service.upsert_application(
                db,
                params.key,
                port=params.port,
                private_key=params.private_key_content,
                github_token=token,
                github_username=github_username,
                status=(
                    application_service.STATUS_CONNECTED
                    if success
                    else application_service.STATUS_CONNECTION_FAILED
                ),
            )
        ctx.application_id = application_id

        connections = {"ssh": ssh, "github": github}
        return StepResult(
            success=success,
            message="Connection verification completed",
            data={
                "sessionId": str(uuid.uuid4()),
                "applicationId": str(application_id),
                "connections": connections,
            },
            detail=connections,
        )


@register_step
class CheckGitHubTokenStep(Step):
    """Verify a GitHub token and store it on an existing application."""

    name = "check-github-token"
    input_model = GitHubTokenInput

    async def execute(self, ctx: StepContext) -> StepResult:
        params: GitHubTokenInput = ctx.params
        try:
            identity = await github_service.verify_token(params.github_token)
        except HostingApiError as e:
            if e.status in (401, 403):
                raise PreconditionError(f"GitHub token is invalid or expired: {e.upstream_message}") from None
            raise

        async with ctx.session() as db:
            await application_service.set_github_identity(
                db, ctx.app.id, params.github_token, identity.login
            )
        ctx.remember(github_username=identity.login)

        return StepResult.ok(
            f"GitHub token verified for {identity.login}",
            data={"githubUsername": identity.login, "name": identity.name},
            detail={"github_username": identity.login},
        )
