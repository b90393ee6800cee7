"""Remote command sessions over SSH (asyncssh).

A RemoteSession wraps one authenticated connection. Every command runs
under a timeout; when a command times out the session is closed so nothing
is left running against the host from this side. close() is idempotent.

Commands are not transactional: a sequence that fails halfway leaves the
remote host in whatever state the completed commands produced. Steps are
written so that re-running them converges.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import asyncssh

from shipyard.errors import RemoteConnectionError, RemoteExecutionError, RemoteTimeoutError
from shipyard.logging_config import get_logger
from shipyard.services.remote_commands import Arg, HomePath, and_then, cmd, sudo, write_to

logger = get_logger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_COMMAND_TIMEOUT = 60.0


@dataclass(frozen=True)
class CommandResult:
    """Captured output of a finished remote command."""

    stdout: str
    stderr: str
    exit_status: int
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    def as_detail(self) -> dict:
        return {
            "stdout": self.stdout.strip(),
            "stderr": self.stderr.strip(),
            "exit_status": self.exit_status,
        }


class RemoteSession:
    """One authenticated SSH connection to a target host."""

    def __init__(
        self,
        conn: asyncssh.SSHClientConnection,
        host: str,
        username: str,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self._conn: asyncssh.SSHClientConnection | None = conn
        self.host = host
        self.username = username
        self.command_timeout = command_timeout

    @property
    def closed(self) -> bool:
        return self._conn is None

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        check: bool = True,
        input: str | None = None,
        label: str = "",
    ) -> CommandResult:
        """Run a shell command and wait for it to finish.

        Raises RemoteTimeoutError (and closes the session) when the command
        outlives its timeout, and RemoteExecutionError on a nonzero exit when
        check is set.
        """
        label = label or command.split(" ", 1)[0]
        if self._conn is None:
            raise RemoteExecutionError(f"{label}: session is closed", command=command)

        timeout = timeout if timeout is not None else self.command_timeout
        started = time.monotonic()
        try:
            completed = await asyncio.wait_for(
                self._conn.run(command, input=input, check=False), timeout=timeout
            )
        except TimeoutError:
            logger.error("Remote command timed out", host=self.host, label=label, timeout=timeout)
            await self.close()
            raise RemoteTimeoutError(
                f"{label} timed out after {timeout:g}s", command=command
            ) from None
        except (asyncssh.Error, OSError) as e:
            raise RemoteExecutionError(f"{label} could not run: {e}", command=command) from e

        result = CommandResult(
            stdout=_as_text(completed.stdout),
            stderr=_as_text(completed.stderr),
            exit_status=completed.exit_status if completed.exit_status is not None else -1,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.debug(
            "Remote command finished",
            host=self.host,
            label=label,
            exit_status=result.exit_status,
            duration_ms=result.duration_ms,
        )

        if check and not result.ok:
            stderr = result.stderr.strip()
            raise RemoteExecutionError(
                f"{label} exited with {result.exit_status}" + (f": {stderr}" if stderr else ""),
                command=command,
                exit_status=result.exit_status,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    async def write_file(self, path: Arg, content: str, *, label: str = "") -> CommandResult:
        """Write content to a remote file by streaming it over stdin."""
        return await self.run(write_to(path), input=content, label=label or "write file")

    async def has_passwordless_sudo(self, timeout: float = 5.0) -> bool:
        """True when `sudo -n true` succeeds (no password prompt)."""
        try:
            result = await self.run(sudo("true"), timeout=timeout, check=False, label="sudo check")
        except RemoteTimeoutError:
            return False
        return result.ok

    async def file_exists(self, path: Arg) -> bool:
        result = await self.run(cmd("test", "-f", path), check=False, label="test -f")
        return result.ok

    async def read_file(self, path: Arg, *, label: str = "") -> str:
        result = await self.run(cmd("cat", path), label=label or "read file")
        return result.stdout

    async def generate_keypair(self, path: HomePath, comment: str, *, timeout: float | None = None) -> str:
        """Create a fresh ed25519 key pair at path, replacing any existing one.

        Returns the public key line.
        """
        ssh_dir = HomePath(".ssh")
        await self.run(
            and_then(cmd("mkdir", "-p", ssh_dir), cmd("chmod", "700", ssh_dir)),
            label="prepare ~/.ssh",
        )
        await self.run(cmd("rm", "-f", path, path.with_suffix(".pub")), label="remove old key")
        await self.run(
            cmd("ssh-keygen", "-q", "-t", "ed25519", "-f", path, "-N", "", "-C", comment),
            timeout=timeout,
            input="",
            label="ssh-keygen",
        )
        await self.run(cmd("chmod", "600", path), label="chmod key")
        public_key = (await self.read_file(path.with_suffix(".pub"), label="read public key")).strip()
        if not public_key:
            raise RemoteExecutionError(f"Public key {path}.pub is empty", command="cat")
        return public_key

    async def close(self) -> None:
        """Release the connection. Safe to call repeatedly."""
        conn, self._conn = self._conn, None
        if conn is None:
            return
        conn.close()
        try:
            await conn.wait_closed()
        except (asyncssh.Error, OSError) as e:
            logger.debug("Error while closing SSH connection", host=self.host, error=str(e))
        logger.debug("SSH connection closed", host=self.host)

    async def __aenter__(self) -> "RemoteSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def load_private_key(private_key: str) -> asyncssh.SSHKey:
    """Parse an OpenSSH/PEM private key, raising RemoteConnectionError if unusable."""
    try:
        return asyncssh.import_private_key(private_key)
    except (asyncssh.KeyImportError, ValueError) as e:
        raise RemoteConnectionError(f"Invalid SSH private key: {e}") from None


async def open_session(
    host: str,
    port: int,
    username: str,
    private_key: str,
    *,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    known_hosts: str | None = None,
) -> RemoteSession:
    """Open an authenticated session.

    Raises RemoteConnectionError if the key is unusable, or if the TCP
    handshake and authentication do not complete within timeout seconds.
    """
    key = load_private_key(private_key)
    logger.info("Opening SSH connection", host=host, port=port, username=username)
    try:
        conn = await asyncio.wait_for(
            asyncssh.connect(
                host,
                port=port,
                username=username,
                client_keys=[key],
                known_hosts=known_hosts,
                agent_path=None,
                connect_timeout=timeout,
            ),
            timeout=timeout,
        )
    except TimeoutError:
        raise RemoteConnectionError(
            f"SSH connection to {username}@{host}:{port} timed out after {timeout:g}s"
        ) from None
    except asyncssh.PermissionDenied as e:
        raise RemoteConnectionError(
            f"SSH authentication failed for {username}@{host}:{port}: {e.reason}"
        ) from None
    except (asyncssh.Error, OSError) as e:
        raise RemoteConnectionError(f"SSH connection to {username}@{host}:{port} failed: {e}") from None

    logger.info("SSH connection established", host=host, username=username)
    return RemoteSession(conn, host=host, username=username, command_timeout=command_timeout)


@asynccontextmanager
async def remote_session(
    host: str,
    port: int,
    username: str,
    private_key: str,
    **kwargs,
) -> AsyncGenerator[RemoteSession]:
    """Context manager form of open_session; always closes the session."""
    session = await open_session(host, port, username, private_key, **kwargs)
    try:
        yield session
    finally:
        await session.close()
