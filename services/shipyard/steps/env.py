"""Environment file steps.

env-setup seeds <pathname>/shared/.env from the repository's .env.example;
env-update merges the database settings into that file.
"""

import re

from pydantic import Field, field_validator

from shipyard.errors import HostingApiError, PreconditionError, RemoteExecutionError
from shipyard.logging_config import get_logger
from shipyard.services import application_service, github_service
from shipyard.services.remote_commands import cmd, or_true, sudo
from shipyard.services.ssh_service import RemoteSession
from shipyard.steps.base import (
    AbsolutePath,
    DbType,
    RepositoryRef,
    RequiredStr,
    Step,
    StepContext,
    StepInput,
    StepResult,
    parse_repository,
)
from shipyard.steps.registry import register_step

logger = get_logger(__name__)

ENV_EXAMPLE_BRANCHES = ("main", "master")
ENV_EXAMPLE_PATHS = (".env.example", "env.example", "example.env", "config/.env.example")

SUDO_REQUIRED = (
    "sudo -n not permitted for required commands (setfacl/mkdir). Configure NOPASSWD "
    "for setfacl and mkdir on the target path, then retry."
)

_NEEDS_QUOTES = re.compile(r"[\s#\"'$\\`]")


class EnvSetupInput(StepInput):
    pathname: AbsolutePath
    selected_repo: RepositoryRef | None = None

    @field_validator("selected_repo", mode="before")
    @classmethod
    def _blank_is_unset(cls, value):
        return value or None


class EnvUpdateInput(StepInput):
    pathname: AbsolutePath
    db_type: DbType
    db_port: int = Field(ge=1, le=65535)
    db_name: RequiredStr
    db_username: RequiredStr
    db_password: str | None = None


def env_file_path(pathname: str) -> str:
    return f"{pathname}/shared/.env"


async def fetch_env_example(owner: str, repo: str, token: str | None) -> str | None:
    """First .env.example found, trying each branch and path via the API, then raw URLs."""
    for ref in ENV_EXAMPLE_BRANCHES:
        for path in ENV_EXAMPLE_PATHS:
            try:
                found = await github_service.get_file(owner, repo, token, path, ref=ref)
            except HostingApiError as e:
                logger.debug("Contents API lookup failed", path=path, ref=ref, status=e.status)
                continue
            if found is not None:
                logger.info("Found env example", repository=f"{owner}/{repo}", path=path, ref=ref)
                return found.content

    for ref in ENV_EXAMPLE_BRANCHES:
        for path in ENV_EXAMPLE_PATHS:
            content = await github_service.get_raw_file(owner, repo, ref, path)
            if content is not None:
                logger.info("Found env example via raw URL", repository=f"{owner}/{repo}", path=path, ref=ref)
                return content
    return None


def format_env_value(value: str) -> str:
    if not value or not _NEEDS_QUOTES.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def merge_env(content: str, updates: dict[str, str]) -> str:
    """Set keys in dotenv text.

    Existing assignments are rewritten in place, missing keys are appended,
    and comments and blank lines are kept (a commented-out key stays a
    comment).
    """
    lines: list[str] = []
    seen: set[str] = set()
    for line in content.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#") and "=" in stripped:
            key = stripped.split("=", 1)[0].strip()
            key = key.removeprefix("export ").strip()
            if key in updates:
                if key not in seen:
                    lines.append(f"{key}={format_env_value(updates[key])}")
                    seen.add(key)
                continue
        lines.append(line)

    for key, value in updates.items():
        if key not in seen:
            lines.append(f"{key}={format_env_value(value)}")
    return "\n".join(lines) + "\n"


def mask_env_secrets(text: str) -> str:
    return re.sub(r"^(DB_PASSWORD=).*$", r"\1***", text, flags=re.MULTILINE)


async def grant_path_access(remote: RemoteSession, username: str, pathname: str, sudo_timeout: float) -> None:
    if not await remote.has_passwordless_sudo(sudo_timeout):
        raise PreconditionError(SUDO_REQUIRED)
    acl = f"u:{username}:rwx"
    await remote.run(or_true(sudo("setfacl", "-m", acl, pathname)), label="setfacl")
    await remote.run(or_true(sudo("setfacl", "-d", "-m", acl, pathname)), label="setfacl default")


@register_step
class EnvSetupStep(Step):
    name = "env-setup"
    input_model = EnvSetupInput

    async def check(self, ctx: StepContext) -> None:
        if not (ctx.params.selected_repo or ctx.app.selected_repo):
            raise PreconditionError(
                "No repository selected. Provide selectedRepo or select a repository first."
            )

    async def execute(self, ctx: StepContext) -> StepResult:
        params: EnvSetupInput = ctx.params
        app = ctx.app
        owner, repo = parse_repository(params.selected_repo or app.selected_repo or "")
        repository = f"{owner}/{repo}"

        content = await fetch_env_example(owner, repo, application_service.github_token_of(app))
        if content is None:
            raise PreconditionError(
                ".env.example not found in the repository (checked main/master and common paths)."
            )
        if not content.endswith("\n"):
            content += "\n"

        shared_dir = f"{params.pathname}/shared"
        env_path = env_file_path(params.pathname)
        async with ctx.remote() as remote:
            await grant_path_access(
                remote, app.username, params.pathname, ctx.settings.ssh.sudo_check_timeout_seconds
            )
            await remote.run(cmd("mkdir", "-p", shared_dir), label="mkdir shared")
            await remote.write_file(env_path, content, label="write .env")
            if not await remote.file_exists(env_path):
                raise RemoteExecutionError(f".env was not created at {env_path}", command="test -f")

        async with ctx.session() as db:
            await application_service.set_pathname(db, app.id, params.pathname)
            if params.selected_repo:
                await application_service.set_selected_repo(db, app.id, repository)
        ctx.remember(pathname=params.pathname)

        return StepResult.ok(
            ".env created from .env.example",
            data={"filePath": env_path, "verification": "exists", "repository": repository},
            detail={"repository": repository, "path": env_path, "verification": "exists"},
        )


@register_step
class EnvUpdateStep(Step):
    name = "env-update"
    input_model = EnvUpdateInput

    async def execute(self, ctx: StepContext) -> StepResult:
        params: EnvUpdateInput = ctx.params
        password = params.db_password
        if password is None and ctx.app.database_config is not None:
            password = application_service.database_password_of(ctx.app.database_config)

        connection = "mysql" if params.db_type == "mysql" else "pgsql"
        updates = {
            "DB_CONNECTION": connection,
            "DB_HOST": "localhost",
            "DB_PORT": str(params.db_port),
            "DB_DATABASE": params.db_name,
            "DB_USERNAME": params.db_username,
            "DB_PASSWORD": password or "",
        }

        env_path = env_file_path(params.pathname)
        async with ctx.remote() as remote:
            current = await remote.read_file(env_path, label="read .env")
            await remote.write_file(env_path, merge_env(current, updates), label="write .env")
            verify = await remote.run(cmd("grep", "-E", "^DB_", env_path), check=False, label="verify .env")
        verification = mask_env_secrets(verify.stdout.strip())

        return StepResult.ok(
            ".env updated with database configuration",
            data={
                "filePath": env_path,
                "dbConnection": connection,
                "dbPort": params.db_port,
                "dbName": params.db_name,
                "dbUsername": params.db_username,
                "verification": verification,
            },
            detail={
                "path": env_path,
                "db_connection": connection,
                "db_name": params.db_name,
                "db_username": params.db_username,
                "verification": verification,
            },
        )
