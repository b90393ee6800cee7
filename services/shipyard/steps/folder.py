"""Application folder creation."""

from shipyard.errors import PreconditionError
from shipyard.services import application_service
from shipyard.services.remote_commands import sudo
from shipyard.steps.base import AbsolutePath, Step, StepContext, StepInput, StepResult
from shipyard.steps.registry import register_step

SUDO_REQUIRED = (
    "sudo -n not permitted. Configure NOPASSWD for mkdir, chown, and chmod "
    "commands on the target path."
)


class FolderSetupInput(StepInput):
    pathname: AbsolutePath


def folder_commands(pathname: str, owner: str) -> list[str]:
    """Commands that converge the folder regardless of its prior state."""
    return [
        sudo("mkdir", "-p", pathname),
        sudo("chown", "-R", owner, pathname),
        sudo("chmod", "-R", "755", pathname),
    ]


@register_step
class FolderSetupStep(Step):
    name = "folder-setup"
    input_model = FolderSetupInput

    async def execute(self, ctx: StepContext) -> StepResult:
        params: FolderSetupInput = ctx.params
        owner = f"{ctx.app.username}:{ctx.app.username}"

        async with ctx.remote() as remote:
            if not await remote.has_passwordless_sudo(ctx.settings.ssh.sudo_check_timeout_seconds):
                raise PreconditionError(SUDO_REQUIRED)
            for command in folder_commands(params.pathname, owner):
                await remote.run(command, label=command.split(" ", 3)[2])

        async with ctx.session() as db:
            await application_service.set_pathname(db, ctx.app.id, params.pathname)
        ctx.remember(pathname=params.pathname)

        return StepResult.ok(
            "Application folder created successfully",
            data={"pathname": params.pathname, "owner": owner},
            detail={"pathname": params.pathname, "owner": owner},
        )
