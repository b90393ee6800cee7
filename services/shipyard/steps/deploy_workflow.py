"""Deploy workflow update.

Adds (or refreshes) the application's entry under `hosts` in the
repository's deploy.yml and proposes the change as a pull request against
the base branch.
"""

import re
import time
from typing import Any

import yaml

from shipyard.errors import NotFoundError, PreconditionError
from shipyard.logging_config import get_logger
from shipyard.services import github_service
from shipyard.services.github_service import FileChange
from shipyard.steps.base import (
    AbsolutePath,
    RepositoryInput,
    RequiredStr,
    Step,
    StepContext,
    StepResult,
    parse_repository,
)
from shipyard.steps.deploy_key import host_alias_for
from shipyard.steps.registry import register_step

logger = get_logger(__name__)

DEPLOY_FILE_PATHS = (
    ".github/workflows/deploy.yml",
    "deploy.yml",
    ".github/workflows/deploy.yaml",
    "deploy.yaml",
)
COMPOSER_OPTIONS = "--no-dev --optimize-autoloader --prefer-dist --no-interaction --ignore-platform-reqs"

_BOOL_TAG = "tag:yaml.org,2002:bool"


def _yaml12_bool_resolvers(base: type) -> dict:
    """Implicit resolvers of base with YAML 1.1 yes/no/on/off booleans removed.

    Keeps keys such as a workflow's `on:` as strings through a load/dump.
    """
    resolvers = {
        first: [(tag, regexp) for tag, regexp in entries if tag != _BOOL_TAG]
        for first, entries in base.yaml_implicit_resolvers.items()
    }
    bool_regexp = re.compile(r"^(?:true|True|TRUE|false|False|FALSE)$")
    for first in "tTfF":
        resolvers.setdefault(first, []).append((_BOOL_TAG, bool_regexp))
    return resolvers


class WorkflowLoader(yaml.SafeLoader):
    yaml_implicit_resolvers = _yaml12_bool_resolvers(yaml.SafeLoader)


class WorkflowDumper(yaml.SafeDumper):
    yaml_implicit_resolvers = _yaml12_bool_resolvers(yaml.SafeDumper)


class DeployWorkflowInput(RepositoryInput):
    base_branch: RequiredStr
    ssh_path: AbsolutePath


def _entry_name(entry: Any) -> str | None:
    if not isinstance(entry, dict):
        return None
    name = entry.get("application") or entry.get("name") or entry.get("app")
    return name.strip() if isinstance(name, str) else None


def upsert_host_entry(document: str, entry: dict[str, Any]) -> str:
    """Merge entry into the `hosts` list of a deploy.yml, matched by application name."""
    doc = yaml.load(document, Loader=WorkflowLoader) or {}
    if not isinstance(doc, dict):
        raise ValueError("top level is not a mapping")

    hosts = doc.get("hosts") or []
    if not isinstance(hosts, list):
        hosts = [hosts]

    wanted = entry["application"].strip()
    for index, existing in enumerate(hosts):
        if _entry_name(existing) == wanted:
            hosts[index] = {**existing, **entry}
            break
    else:
        hosts.append(entry)
    doc["hosts"] = hosts

    return yaml.dump(doc, Dumper=WorkflowDumper, sort_keys=False, width=120, allow_unicode=True)


def feature_branch_name(application_name: str) -> str:
    slug = re.sub(r"\W+", "-", application_name).strip("-") or "app"
    return f"deploy-update-{slug}-{int(time.time() * 1000)}"


@register_step
class DeployWorkflowStep(Step):
    name = "deploy-workflow-update"
    input_model = DeployWorkflowInput

    async def check(self, ctx: StepContext) -> None:
        ctx.github_token()

    async def execute(self, ctx: StepContext) -> StepResult:
        params: DeployWorkflowInput = ctx.params
        app = ctx.app
        token = ctx.github_token()
        owner, repo = parse_repository(params.selected_repo)
        repository = f"{owner}/{repo}"

        deploy_file = None
        for path in DEPLOY_FILE_PATHS:
            deploy_file = await github_service.get_file(owner, repo, token, path, ref=params.base_branch)
            if deploy_file is not None:
                break
        if deploy_file is None:
            raise NotFoundError("deploy.yml not found in repository")

        alias = host_alias_for(ctx.settings.github.ssh_host, app.application_name)
        entry = {
            "application": app.application_name,
            "remote_user": app.username,
            "hostname": app.host,
            "deploy_path": params.ssh_path,
            "branch": params.base_branch,
            "composer_options": COMPOSER_OPTIONS,
            "npm_build": "build",
            "repository": f"git@{alias}:{owner}/{repo}.git",
        }
        try:
            content = upsert_host_entry(deploy_file.content, entry)
        except (yaml.YAMLError, ValueError) as e:
            raise PreconditionError(f"Invalid YAML in {deploy_file.path}: {e}") from None

        branch = feature_branch_name(app.application_name)
        pr = await github_service.open_pull_request(
            owner,
            repo,
            token,
            branch=branch,
            base_branch=params.base_branch,
            changes=[FileChange(deploy_file.path, content, deploy_file.sha)],
            title=f"Update deploy.yml for {app.application_name}",
            body=f"This PR updates deploy.yml to configure deployment for {app.application_name}.",
            commit_message=f"chore: update deploy.yml for {app.application_name}",
        )

        return StepResult.ok(
            "deploy.yml updated and PR created",
            data={
                "repository": repository,
                "baseBranch": params.base_branch,
                "featureBranch": branch,
                "deployPath": deploy_file.path,
                "prNumber": pr.number,
                "prUrl": pr.url,
            },
            detail={
                "repository": repository,
                "base_branch": params.base_branch,
                "feature_branch": branch,
                "deploy_path": deploy_file.path,
                "commit": pr.commit_sha,
                "pr_number": pr.number,
            },
        )
