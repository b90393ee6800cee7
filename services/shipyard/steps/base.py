"""Step building blocks.

A Step declares its request model, whether it needs an existing Application,
and an execute() coroutine. The executor validates input, resolves the
application, builds a StepContext and turns whatever execute() returns or
raises into a StepResult plus one StepLog row.
"""

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Annotated, Any, ClassVar

from pydantic import AfterValidator, BaseModel, ConfigDict, StringConstraints
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipyard.config import Settings
from shipyard.db.models import Application
from shipyard.errors import PreconditionError
from shipyard.services import application_service, github_service
from shipyard.services.application_service import ApplicationKey
from shipyard.services.ssh_service import RemoteSession, remote_session

RequiredStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

DB_TYPES = {
    "mysql": "mysql",
    "mariadb": "mysql",
    "postgresql": "postgresql",
    "postgres": "postgresql",
    "pgsql": "postgresql",
}


def _absolute_path(value: str) -> str:
    if not value.startswith("/") or "\0" in value or ".." in value.split("/"):
        raise ValueError("must be an absolute path without '..' segments")
    path = value.rstrip("/")
    if not path:
        raise ValueError("must not be the filesystem root")
    return path


def _db_type(value: str) -> str:
    try:
        return DB_TYPES[value.lower()]
    except KeyError:
        raise ValueError("must be MySQL or PostgreSQL") from None


def _repository(value: str) -> str:
    if github_service.parse_repo(value) is None:
        raise ValueError("Invalid repository format. Use owner/repo or GitHub URL.")
    return value


AbsolutePath = Annotated[RequiredStr, AfterValidator(_absolute_path)]
DbType = Annotated[RequiredStr, AfterValidator(_db_type)]
RepositoryRef = Annotated[RequiredStr, AfterValidator(_repository)]


def parse_repository(value: str) -> tuple[str, str]:
    """(owner, repo) from owner/repo or a GitHub URL.

    Request values are already checked by RepositoryRef; a bad value here
    comes from the registry.
    """
    parsed = github_service.parse_repo(value)
    if parsed is None:
        raise PreconditionError("Invalid repository format. Use owner/repo or GitHub URL.")
    return parsed


class StepInput(BaseModel):
    """Fields every step request carries: the application's natural key.

    Request bodies use camelCase (applicationName); attributes are snake_case.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    host: RequiredStr
    username: RequiredStr
    application_name: RequiredStr

    @property
    def key(self) -> ApplicationKey:
        return ApplicationKey(self.host, self.username, self.application_name)


class RepositoryInput(StepInput):
    selected_repo: RepositoryRef


@dataclass
class StepResult:
    success: bool
    message: str
    data: dict[str, Any] | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, data: dict | None = None, detail: dict | None = None) -> "StepResult":
        return cls(True, message, data, detail or {})

    @classmethod
    def failed(cls, message: str, data: dict | None = None, detail: dict | None = None) -> "StepResult":
        return cls(False, message, data, detail or {})


@dataclass
class StepOutcome:
    """What the executor hands back to the gateway."""

    step: str
    result: StepResult
    application_id: uuid.UUID | None
    http_status: int
    attempts: int = 1
    duration_ms: int = 0

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": self.result.success, "message": self.result.message}
        if not self.result.success:
            body["error"] = self.result.message
        if self.result.data is not None:
            body["data"] = self.result.data
        return body


class StepContext:
    """Everything a running step may touch.

    application is None only for steps that create it (connection-verify);
    such steps set application_id themselves so the outcome can be logged.
    """

    def __init__(
        self,
        step_name: str,
        params: StepInput,
        application: Application | None,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> None:
        self.step_name = step_name
        self.params = params
        self.application = application
        self.application_id: uuid.UUID | None = application.id if application else None
        self.session_factory = session_factory
        self.settings = settings

    @property
    def app(self) -> Application:
        if self.application is None:
            raise PreconditionError("Application not found. Please verify connection first.")
        return self.application

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Short unit of work against the registry; commits on success."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def remote(self) -> AsyncGenerator[RemoteSession]:
        """Open a session to the application's host with its stored key."""
        app = self.app
        private_key = application_service.private_key_of(app)
        if not private_key:
            raise PreconditionError("SSH private key missing. Please verify connection first.")
        ssh = self.settings.ssh
        async with remote_session(
            app.host,
            app.port,
            app.username,
            private_key,
            timeout=ssh.connect_timeout_seconds,
            command_timeout=ssh.command_timeout_seconds,
            known_hosts=ssh.known_hosts,
        ) as session:
            yield session

    def github_token(self) -> str:
        token = application_service.github_token_of(self.app)
        if not token:
            raise PreconditionError("GitHub token missing. Please authenticate GitHub first.")
        return token

    def remember(self, **fields: Any) -> None:
        """Mirror fields just written to the registry onto the loaded application."""
        if self.application is not None:
            for name, value in fields.items():
                setattr(self.application, name, value)


class Step:
    """Base class for registered steps."""

    name: ClassVar[str]
    input_model: ClassVar[type[StepInput]] = StepInput
    requires_application: ClassVar[bool] = True
    # HTTP status for a failed (but handled) execution
    failure_status: ClassVar[int] = 500

    async def check(self, ctx: StepContext) -> None:
        """Raise PreconditionError when the application cannot run this step."""

    async def execute(self, ctx: StepContext) -> StepResult:
        raise NotImplementedError
