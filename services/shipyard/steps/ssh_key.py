"""CI deploy credentials.

Generates a key pair on the target host, authorizes its public half for the
deploying user and stores the private half as a GitHub Actions secret, so a
workflow can SSH into the host.
"""

from shipyard.errors import HostingApiError, RemoteExecutionError
from shipyard.logging_config import get_logger
from shipyard.services import application_service, github_service
from shipyard.services.remote_commands import HomePath, and_then, cmd, safe_name, secret_name
from shipyard.steps.base import RepositoryInput, Step, StepContext, StepResult, parse_repository
from shipyard.steps.registry import register_step

logger = get_logger(__name__)

AUTHORIZED_KEYS = HomePath(".ssh/authorized_keys")


def authorize_key(authorized_keys: str, public_key: str, comment: str) -> str | None:
    """authorized_keys content with public_key as the only key tagged comment.

    Returns None when the file already holds exactly that key for comment.
    """
    lines = authorized_keys.splitlines()
    tagged = [line for line in lines if line.rstrip().endswith(" " + comment)]
    if tagged == [public_key]:
        return None
    kept = [line for line in lines if line not in tagged]
    return "\n".join([*kept, public_key]) + "\n"


@register_step
class SSHKeySetupStep(Step):
    name = "ssh-key-setup"
    input_model = RepositoryInput

    async def check(self, ctx: StepContext) -> None:
        ctx.github_token()

    async def execute(self, ctx: StepContext) -> StepResult:
        params: RepositoryInput = ctx.params
        app = ctx.app
        token = ctx.github_token()
        owner, repo = parse_repository(params.selected_repo)
        repository = f"{owner}/{repo}"

        key_name = f"github_actions_{safe_name(app.application_name)}"
        key_path = HomePath(".ssh") / key_name
        secret = secret_name(app.application_name)
        comment = f"github-actions-{safe_name(app.application_name)}"

        async with ctx.remote() as remote:
            public_key = await remote.generate_keypair(
                key_path, comment, timeout=ctx.settings.ssh.keygen_timeout_seconds
            )
            private_key = (await remote.read_file(key_path, label="read private key")).strip()
            if not private_key:
                raise RemoteExecutionError("Failed to read generated private key", command="cat")

            await remote.run(
                and_then(cmd("touch", AUTHORIZED_KEYS), cmd("chmod", "600", AUTHORIZED_KEYS)),
                label="prepare authorized_keys",
            )
            # Keys from earlier runs carry the same comment and are dropped
            current = await remote.read_file(AUTHORIZED_KEYS, label="read authorized_keys")
            updated = authorize_key(current, public_key, comment)
            if updated is not None:
                await remote.write_file(AUTHORIZED_KEYS, updated, label="write authorized_keys")

        async with ctx.session() as db:
            await application_service.set_secret_name(db, app.id, secret)
        ctx.remember(private_key_secret_name=secret)

        # The key is already usable on the host; a failed upload is reported, not fatal
        secret_error = None
        try:
            await github_service.put_actions_secret(owner, repo, token, secret, private_key)
        except HostingApiError as e:
            secret_error = e.message
            logger.error("Failed to store Actions secret", repository=repository, secret=secret, error=e.message)

        message = "SSH key pair generated and configured"
        if secret_error:
            message += f", but the GitHub secret could not be stored: {secret_error}"

        return StepResult.ok(
            message,
            data={
                "keyName": key_name,
                "secretName": secret,
                "publicKeyAdded": True,
                "secretStored": secret_error is None,
                "repository": repository,
                "instructions": f"Add this secret to your GitHub Actions workflow: ${{{{ secrets.{secret} }}}}",
            },
            detail={
                "key_name": key_name,
                "secret_name": secret,
                "repository": repository,
                "secret_stored": secret_error is None,
                "secret_error": secret_error,
            },
        )
