"""Application registry.

An Application is identified by its natural key (host, username,
application_name). Rows are created by the first connection verification and
updated in place afterwards; nothing in the service deletes them.

All functions take an AsyncSession and leave committing to the caller.
"""

import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.db.models import Application, DatabaseConfig, generate_uuid7, utc_now
from shipyard.logging_config import get_logger
from shipyard.services.encryption_service import decrypt_secret, encrypt_secret

logger = get_logger(__name__)

STATUS_PENDING = "pending"
STATUS_CONNECTED = "connected"
STATUS_CONNECTION_FAILED = "connection_failed"


@dataclass(frozen=True)
class ApplicationKey:
    """Natural key of an Application."""

    host: str
    username: str
    application_name: str

    def __str__(self) -> str:
        return f"{self.application_name} ({self.username}@{self.host})"


def _insert(db: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Unsupported database dialect for upsert: {dialect}")


async def upsert_application(
    db: AsyncSession,
    key: ApplicationKey,
    *,
    port: int,
    private_key: str,
    github_token: str | None = None,
    github_username: str | None = None,
    status: str = STATUS_PENDING,
) -> uuid.UUID:
    """Insert an application or overwrite its connection fields. Returns its id.

    A single INSERT ... ON CONFLICT DO UPDATE, so concurrent calls for the same
    key converge on one row. A stored GitHub token is kept when none is given.
    """
    now = utc_now()
    fields: dict[str, Any] = {
        "port": port,
        "ssh_private_key_encrypted": encrypt_secret(private_key),
        "status": status,
        "updated_at": now,
    }
    if github_token is not None:
        fields["github_token_encrypted"] = encrypt_secret(github_token)
        fields["github_username"] = github_username

    insert = _insert(db)
    stmt = insert(Application).values(
        id=generate_uuid7(),
        host=key.host,
        username=key.username,
        application_name=key.application_name,
        created_at=now,
        **fields,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Application.host, Application.username, Application.application_name],
        set_=fields,
    ).returning(Application.id)

    result = await db.execute(stmt)
    application_id = result.scalar_one()
    logger.info("Application upserted", application=str(key), application_id=str(application_id))
    return application_id


async def get_application(db: AsyncSession, key: ApplicationKey) -> Application | None:
    result = await db.execute(
        select(Application).where(
            Application.host == key.host,
            Application.username == key.username,
            Application.application_name == key.application_name,
        )
    )
    return result.scalar_one_or_none()


async def get_application_by_id(db: AsyncSession, application_id: uuid.UUID) -> Application | None:
    return await db.get(Application, application_id)


async def list_applications(
    db: AsyncSession, limit: int = 100, offset: int = 0
) -> list[Application]:
    """Applications, most recently updated first."""
    result = await db.execute(
        select(Application)
        .order_by(Application.updated_at.desc(), Application.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def update_application(db: AsyncSession, application_id: uuid.UUID, **fields: Any) -> None:
    """Overwrite the given columns on one application."""
    fields["updated_at"] = utc_now()
    await db.execute(update(Application).where(Application.id == application_id).values(**fields))


async def set_selected_repo(db: AsyncSession, application_id: uuid.UUID, repo: str) -> None:
    await update_application(db, application_id, selected_repo=repo)


async def set_pathname(db: AsyncSession, application_id: uuid.UUID, pathname: str) -> None:
    await update_application(db, application_id, pathname=pathname)


async def set_secret_name(db: AsyncSession, application_id: uuid.UUID, name: str) -> None:
    await update_application(db, application_id, private_key_secret_name=name)


async def set_github_identity(
    db: AsyncSession, application_id: uuid.UUID, token: str, username: str | None
) -> None:
    await update_application(
        db,
        application_id,
        github_token_encrypted=encrypt_secret(token),
        github_username=username,
    )


# --- Database configuration ---


@dataclass(frozen=True)
class DatabaseSettings:
    """Plaintext database configuration as supplied by a client."""

    db_type: str
    db_name: str
    db_username: str
    db_password: str | None = None
    db_port: int | None = None


async def save_database_config(
    db: AsyncSession, application_id: uuid.UUID, config: DatabaseSettings
) -> None:
    """Replace the application's database configuration wholesale."""
    now = utc_now()
    values = {
        "db_type": config.db_type,
        "db_name": config.db_name,
        "db_username": config.db_username,
        "db_password_encrypted": encrypt_secret(config.db_password),
        "db_port": config.db_port,
        "updated_at": now,
    }
    insert = _insert(db)
    stmt = insert(DatabaseConfig).values(application_id=application_id, **values)
    stmt = stmt.on_conflict_do_update(index_elements=[DatabaseConfig.application_id], set_=values)
    await db.execute(stmt)
    await update_application(db, application_id, db_type=config.db_type)
    logger.info(
        "Database config saved",
        application_id=str(application_id),
        db_type=config.db_type,
        db_name=config.db_name,
    )


async def get_database_config(db: AsyncSession, application_id: uuid.UUID) -> DatabaseConfig | None:
    return await db.get(DatabaseConfig, application_id)


# --- Credential access and presentation ---


def private_key_of(app: Application) -> str | None:
    return decrypt_secret(app.ssh_private_key_encrypted)


def github_token_of(app: Application) -> str | None:
    return decrypt_secret(app.github_token_encrypted)


def database_password_of(config: DatabaseConfig) -> str | None:
    return decrypt_secret(config.db_password_encrypted)


def database_config_to_dict(config: DatabaseConfig | None) -> dict | None:
    """Client view of a database config. The password is never included."""
    if config is None:
        return None
    return {
        "dbType": config.db_type,
        "dbName": config.db_name,
        "dbUsername": config.db_username,
        "dbPort": config.db_port,
        "hasPassword": config.db_password_encrypted is not None,
        "updatedAt": config.updated_at.isoformat() if config.updated_at else None,
    }


def application_to_dict(app: Application) -> dict:
    """Client view of an application. Credentials are reported by presence only."""
    return {
        "id": str(app.id),
        "host": app.host,
        "username": app.username,
        "applicationName": app.application_name,
        "port": app.port,
        "hasPrivateKey": app.ssh_private_key_encrypted is not None,
        "hasGithubToken": app.github_token_encrypted is not None,
        "githubUsername": app.github_username,
        "selectedRepo": app.selected_repo,
        "pathname": app.pathname,
        "domain": app.domain,
        "dbType": app.db_type,
        "privateKeySecretName": app.private_key_secret_name,
        "status": app.status,
        "createdAt": app.created_at.isoformat() if app.created_at else None,
        "updatedAt": app.updated_at.isoformat() if app.updated_at else None,
    }
