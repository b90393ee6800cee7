"""Tests for remote sessions."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import asyncssh
import pytest

from shipyard.errors import RemoteConnectionError, RemoteExecutionError, RemoteTimeoutError
from shipyard.services.remote_commands import HomePath
from shipyard.services.ssh_service import RemoteSession, load_private_key, open_session


def _conn(exit_status=0, stdout="", stderr=""):
    conn = MagicMock()
    conn.run = AsyncMock(
        return_value=SimpleNamespace(exit_status=exit_status, stdout=stdout, stderr=stderr)
    )
    conn.wait_closed = AsyncMock()
    return conn


class TestRun:
    async def test_captures_output(self):
        session = RemoteSession(_conn(stdout="hello\n"), "h", "u")
        result = await session.run("echo hello")
        assert result.ok
        assert result.stdout == "hello\n"

    async def test_nonzero_exit_raises_when_checked(self):
        session = RemoteSession(_conn(exit_status=2, stderr="nope"), "h", "u")
        with pytest.raises(RemoteExecutionError) as exc_info:
            await session.run("false", label="probe")
        assert exc_info.value.exit_status == 2
        assert exc_info.value.message == "probe exited with 2: nope"

    async def test_nonzero_exit_returned_when_unchecked(self):
        session = RemoteSession(_conn(exit_status=1), "h", "u")
        result = await session.run("false", check=False)
        assert not result.ok

    async def test_input_is_streamed(self):
        conn = _conn()
        session = RemoteSession(conn, "h", "u")
        await session.write_file("/tmp/f", "content")
        conn.run.assert_awaited_once_with("cat > /tmp/f", input="content", check=False)

    async def test_timeout_closes_session(self):
        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        conn = _conn()
        conn.run = AsyncMock(side_effect=hang)
        session = RemoteSession(conn, "h", "u")

        with pytest.raises(RemoteTimeoutError):
            await session.run("sleep 100", timeout=0.01)

        assert session.closed
        conn.close.assert_called_once()

    async def test_closed_session_refuses_commands(self):
        session = RemoteSession(_conn(), "h", "u")
        await session.close()
        await session.close()
        with pytest.raises(RemoteExecutionError):
            await session.run("true")


class TestHelpers:
    async def test_passwordless_sudo(self):
        assert await RemoteSession(_conn(), "h", "u").has_passwordless_sudo()
        assert not await RemoteSession(_conn(exit_status=1), "h", "u").has_passwordless_sudo()

    async def test_generate_keypair_returns_public_key(self):
        conn = _conn(stdout="ssh-ed25519 AAAA comment\n")
        session = RemoteSession(conn, "h", "u")

        public_key = await session.generate_keypair(HomePath(".ssh/app_key"), "comment")

        assert public_key == "ssh-ed25519 AAAA comment"
        commands = [call.args[0] for call in conn.run.await_args_list]
        assert any(c.startswith("ssh-keygen -q -t ed25519") for c in commands)
        assert commands[-1] == "cat \"$HOME\"/.ssh/app_key.pub"

    async def test_generate_keypair_empty_public_key(self):
        session = RemoteSession(_conn(stdout=""), "h", "u")
        with pytest.raises(RemoteExecutionError):
            await session.generate_keypair(HomePath(".ssh/app_key"), "comment")


class TestOpenSession:
    def test_invalid_private_key(self):
        with pytest.raises(RemoteConnectionError, match="Invalid SSH private key"):
            load_private_key("not a key")

    @patch("shipyard.services.ssh_service.load_private_key")
    async def test_authentication_failure(self, mock_load):
        with patch(
            "shipyard.services.ssh_service.asyncssh.connect",
            AsyncMock(side_effect=asyncssh.PermissionDenied("publickey rejected")),
        ):
            with pytest.raises(RemoteConnectionError, match="authentication failed"):
                await open_session("h", 22, "u", "key")

    @patch("shipyard.services.ssh_service.load_private_key")
    async def test_unreachable_host(self, mock_load):
        with patch(
            "shipyard.services.ssh_service.asyncssh.connect",
            AsyncMock(side_effect=OSError("Connection refused")),
        ):
            with pytest.raises(RemoteConnectionError, match="Connection refused"):
                await open_session("h", 22, "u", "key")
