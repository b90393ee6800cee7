"""Database and user creation on the target host.

SQL is fed to the database client over stdin, never through the shell
command line. Every statement is safe to repeat: running the step twice
leaves one database and one user with the latest password.
"""

from pydantic import Field

from shipyard.logging_config import get_logger
from shipyard.services import application_service
from shipyard.services.application_service import DatabaseSettings
from shipyard.services.remote_commands import sudo
from shipyard.steps.base import DbType, RequiredStr, Step, StepContext, StepInput, StepResult
from shipyard.steps.registry import register_step

logger = get_logger(__name__)

DEFAULT_PORTS = {"mysql": 3306, "postgresql": 5432}


class DatabaseCreateInput(StepInput):
    db_type: DbType
    db_name: RequiredStr
    db_username: RequiredStr
    db_password: RequiredStr
    db_port: int | None = Field(default=None, ge=1, le=65535)


def mysql_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def mysql_literal(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"


def pg_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def pg_literal(value: str) -> str:
    # standard_conforming_strings is on by default: backslashes are literal
    return "'" + value.replace("'", "''") + "'"


def mysql_script(db_name: str, db_username: str, db_password: str) -> str:
    db = mysql_identifier(db_name)
    user = f"{mysql_literal(db_username)}@'localhost'"
    password = mysql_literal(db_password)
    return "\n".join(
        [
            f"CREATE DATABASE IF NOT EXISTS {db};",
            f"CREATE USER IF NOT EXISTS {user} IDENTIFIED BY {password};",
            f"ALTER USER {user} IDENTIFIED BY {password};",
            f"GRANT ALL PRIVILEGES ON {db}.* TO {user};",
            "FLUSH PRIVILEGES;",
            "",
        ]
    )


def postgres_script(db_name: str, db_username: str, db_password: str) -> str:
    """psql script; CREATE DATABASE cannot run in a transaction, hence \\gexec."""
    db = pg_identifier(db_name)
    role = pg_identifier(db_username)
    return "\n".join(
        [
            f"SELECT 'CREATE ROLE ' || quote_ident({pg_literal(db_username)}) || ' LOGIN' "
            f"WHERE NOT EXISTS (SELECT 1 FROM pg_roles WHERE rolname = {pg_literal(db_username)})\\gexec",
            f"ALTER ROLE {role} WITH LOGIN PASSWORD {pg_literal(db_password)};",
            f"SELECT 'CREATE DATABASE ' || quote_ident({pg_literal(db_name)}) || ' OWNER ' || quote_ident({pg_literal(db_username)}) "
            f"WHERE NOT EXISTS (SELECT 1 FROM pg_database WHERE datname = {pg_literal(db_name)})\\gexec",
            f"GRANT ALL PRIVILEGES ON DATABASE {db} TO {role};",
            "",
        ]
    )


def create_command(db_type: str) -> str:
    if db_type == "mysql":
        return sudo("mysql", "--batch")
    return sudo("-u", "postgres", "psql", "-q", "-v", "ON_ERROR_STOP=1", "-d", "postgres")


@register_step
class DatabaseCreateStep(Step):
    name = "database-create"
    input_model = DatabaseCreateInput

    async def execute(self, ctx: StepContext) -> StepResult:
        params: DatabaseCreateInput = ctx.params
        port = params.db_port or DEFAULT_PORTS[params.db_type]
        if params.db_type == "mysql":
            script = mysql_script(params.db_name, params.db_username, params.db_password)
        else:
            script = postgres_script(params.db_name, params.db_username, params.db_password)

        logger.info(
            "Creating database",
            db_type=params.db_type,
            db_name=params.db_name,
            db_username=params.db_username,
        )
        async with ctx.remote() as remote:
            result = await remote.run(
                create_command(params.db_type), input=script, label=f"{params.db_type} create"
            )

        async with ctx.session() as db:
            await application_service.save_database_config(
                db,
                ctx.app.id,
                DatabaseSettings(
                    db_type=params.db_type,
                    db_name=params.db_name,
                    db_username=params.db_username,
                    db_password=params.db_password,
                    db_port=port,
                ),
            )
        ctx.remember(db_type=params.db_type)

        label = "MySQL" if params.db_type == "mysql" else "PostgreSQL"
        return StepResult.ok(
            f"{label} database created successfully",
            data={
                "dbType": params.db_type,
                "dbName": params.db_name,
                "dbUsername": params.db_username,
                "host": ctx.app.host,
                "port": port,
            },
            detail={
                "db_type": params.db_type,
                "db_name": params.db_name,
                "db_username": params.db_username,
                **result.as_detail(),
            },
        )
