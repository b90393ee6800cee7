"""Error taxonomy shared by the services, the step executor and the API.

Every error carries the HTTP status the gateway should answer with. Step
implementations raise these; the executor turns them into a StepResult and a
StepLog row, so only validation, lookup and lease errors reach the client as
exceptions.
"""

from typing import Any


class ShipyardError(Exception):
    """Base class for all Shipyard errors."""

    http_status = 500

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(ShipyardError):
    """Missing or malformed request input. Never persisted to history."""

    http_status = 400

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        super().__init__(message, {"missing": missing} if missing else None)
        self.missing = missing or []


class PreconditionError(ShipyardError):
    """The application exists but lacks something the step needs."""

    http_status = 400


class NotFoundError(ShipyardError):
    """Referenced application (or other record) does not exist."""

    http_status = 404


class ApplicationBusyError(ShipyardError):
    """Another step is already running against the same application."""

    http_status = 409


class UnknownStepError(ShipyardError):
    http_status = 404


class RemoteConnectionError(ShipyardError):
    """Authentication or TCP handshake with the target host failed."""

    http_status = 502


class RemoteExecutionError(ShipyardError):
    """A remote command exited nonzero (or could not run)."""

    http_status = 500

    def __init__(
        self,
        message: str,
        command: str = "",
        exit_status: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(
            message,
            {
                "command": command,
                "exit_status": exit_status,
                "stdout": stdout,
                "stderr": stderr,
            },
        )
        self.command = command
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


class RemoteTimeoutError(RemoteExecutionError):
    """A remote command did not finish within its timeout."""

    http_status = 504


class HostingApiError(ShipyardError):
    """Non-2xx response from the source-hosting API."""

    http_status = 502

    def __init__(self, status: int, upstream_message: str, operation: str = "") -> None:
        prefix = f"{operation}: " if operation else ""
        super().__init__(
            f"{prefix}GitHub API returned {status}: {upstream_message}",
            {"status": status, "upstream_message": upstream_message},
        )
        self.status = status
        self.upstream_message = upstream_message

    @property
    def retriable(self) -> bool:
        return self.status >= 500 or self.status == 0
