"""Deploy key generation.

Generates an ed25519 key on the target host, registers its public half as a
read/write deploy key on the selected repository, and points a dedicated
~/.ssh/config host alias at it so the host can clone over that key.
"""

from shipyard.errors import HostingApiError
from shipyard.logging_config import get_logger
from shipyard.services import application_service, github_service
from shipyard.services.remote_commands import HomePath, cmd, safe_name
from shipyard.steps.base import RepositoryInput, Step, StepContext, StepResult, parse_repository
from shipyard.steps.registry import register_step

logger = get_logger(__name__)

SSH_CONFIG = HomePath(".ssh/config")
DEPLOY_KEY_MARKER = "# Deploy key for "
GITHUB_AUTH_OK = "successfully authenticated"


def host_alias_for(ssh_host: str, application_name: str) -> str:
    return f"{ssh_host}-{safe_name(application_name)}"


def host_block(alias: str, hostname: str, key_name: str, repository: str, application_name: str) -> str:
    return "\n".join(
        [
            f"{DEPLOY_KEY_MARKER}{repository} ({application_name})",
            f"Host {alias}",
            f"  HostName {hostname}",
            "  User git",
            f"  IdentityFile ~/.ssh/{key_name}",
            "  IdentitiesOnly yes",
        ]
    )


def replace_host_block(config: str, alias: str, block: str) -> str:
    """Return config with any existing `Host <alias>` section swapped for block.

    Other sections and comments are left as they are. The marker comment
    written above a previous block is removed along with it.
    """
    kept: list[str] = []
    skipping = False
    for line in config.splitlines():
        words = line.split()
        if words and words[0].lower() in ("host", "match"):
            skipping = words[0].lower() == "host" and words[1:] == [alias]
            if skipping and kept and kept[-1].startswith(DEPLOY_KEY_MARKER):
                kept.pop()
        if not skipping:
            kept.append(line)

    head = "\n".join(kept).rstrip()
    return (head + "\n\n" if head else "") + block + "\n"


@register_step
class DeployKeyStep(Step):
    name = "deploy-key-generation"
    input_model = RepositoryInput

    async def check(self, ctx: StepContext) -> None:
        ctx.github_token()

    async def execute(self, ctx: StepContext) -> StepResult:
        params: RepositoryInput = ctx.params
        app = ctx.app
        token = ctx.github_token()
        owner, repo = parse_repository(params.selected_repo)
        repository = f"{owner}/{repo}"

        key_name = f"{safe_name(app.application_name)}_deploy_key"
        key_path = HomePath(".ssh") / key_name
        title = f"{app.application_name} [{app.username}@{app.host}]"
        ssh_host = ctx.settings.github.ssh_host
        alias = host_alias_for(ssh_host, app.application_name)

        async with ctx.remote() as remote:
            public_key = await remote.generate_keypair(
                key_path,
                f"deploy-key-{safe_name(app.application_name)}",
                timeout=ctx.settings.ssh.keygen_timeout_seconds,
            )

            try:
                key_id = await github_service.register_deploy_key(
                    owner, repo, token, title, public_key, read_only=False
                )
            except HostingApiError as e:
                if e.status != 422:
                    raise
                key_id = await github_service.find_deploy_key(owner, repo, token, public_key)
                if key_id is None:
                    raise
                logger.info("Deploy key already registered", repository=repository, key_id=key_id)

            existing = await remote.run(cmd("cat", SSH_CONFIG), check=False, label="read ssh config")
            config = existing.stdout if existing.ok else ""
            block = host_block(alias, ssh_host, key_name, repository, app.application_name)
            await remote.write_file(SSH_CONFIG, replace_host_block(config, alias, block), label="write ssh config")
            await remote.run(cmd("chmod", "600", SSH_CONFIG), label="chmod ssh config")

            # GitHub closes the test session with exit 1 even on success
            test = await remote.run(
                cmd(
                    "ssh",
                    "-T",
                    "-o",
                    "StrictHostKeyChecking=accept-new",
                    "-o",
                    "BatchMode=yes",
                    f"git@{alias}",
                ),
                check=False,
                timeout=30,
                label="test deploy key",
            )
        output = (test.stdout + test.stderr).strip()
        connection_tested = GITHUB_AUTH_OK in output
        if not connection_tested:
            logger.warning("Deploy key connection test failed", repository=repository, output=output)

        async with ctx.session() as db:
            await application_service.set_selected_repo(db, app.id, repository)
        ctx.remember(selected_repo=repository)

        return StepResult.ok(
            f"Deploy key generated and registered for {repository}",
            data={
                "keyName": key_name,
                "deployKeyTitle": title,
                "repository": repository,
                "keyId": key_id,
                "hostAlias": alias,
                "sshConfigUpdated": True,
                "connectionTested": connection_tested,
                "testMessage": output,
            },
            detail={
                "repository": repository,
                "deploy_key_name": key_name,
                "key_id": key_id,
                "host_alias": alias,
                "connection_tested": connection_tested,
            },
        )
