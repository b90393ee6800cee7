"""GitHub REST API client for provisioning steps.

Authenticates with a personal access token stored (encrypted) on the
Application. Every call is a single request/response with the configured
timeout; there is no retry here. Non-2xx responses raise HostingApiError
carrying the upstream status and message so the calling step can decide
whether the failure is terminal.
"""

import base64
from collections.abc import AsyncIterator
from dataclasses import dataclass
from urllib.parse import quote as url_quote

import httpx
from nacl import encoding, public

from shipyard.config import settings
from shipyard.errors import HostingApiError
from shipyard.logging_config import get_logger

logger = get_logger(__name__)

PAGE_SIZE = 100


@dataclass(frozen=True)
class Repository:
    name: str
    full_name: str
    private: bool
    default_branch: str
    updated_at: str

    @classmethod
    def from_api(cls, data: dict) -> "Repository":
        return cls(
            name=data["name"],
            full_name=data["full_name"],
            private=bool(data.get("private", False)),
            default_branch=data.get("default_branch") or "main",
            updated_at=data.get("updated_at") or "",
        )


@dataclass(frozen=True)
class GitHubIdentity:
    login: str
    name: str | None


@dataclass(frozen=True)
class RepoFile:
    path: str
    content: str
    sha: str


@dataclass(frozen=True)
class FileChange:
    """New content for a file. sha is the blob being replaced (None to create)."""

    path: str
    content: str
    sha: str | None = None


@dataclass(frozen=True)
class PullRequestRef:
    number: int
    url: str
    branch: str
    commit_sha: str | None


def _client(token: str | None, accept: str = "application/vnd.github+json") -> httpx.AsyncClient:
    """Build a client for the GitHub API with auth and version headers."""
    headers = {
        "Accept": accept,
        "X-GitHub-Api-Version": settings.github.api_version,
        "User-Agent": settings.github.user_agent,
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return httpx.AsyncClient(
        base_url=settings.github.api_url.rstrip("/"),
        headers=headers,
        timeout=settings.github.timeout_seconds,
    )


def _upstream_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:500] or resp.reason_phrase
    if isinstance(data, dict):
        message = data.get("message") or resp.reason_phrase
        errors = data.get("errors")
        if errors:
            details = "; ".join(
                e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors
            )
            message = f"{message} ({details})"
        return message
    return resp.reason_phrase


async def _request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    operation: str,
    allow: tuple[int, ...] = (),
    **kwargs,
) -> httpx.Response:
    """Send a request, raising HostingApiError on non-2xx (unless in allow)."""
    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.TimeoutException:
        raise HostingApiError(0, "request timed out", operation) from None
    except httpx.HTTPError as e:
        raise HostingApiError(0, str(e), operation) from None

    if resp.is_success or resp.status_code in allow:
        return resp

    message = _upstream_message(resp)
    logger.warning(
        "GitHub API error",
        operation=operation,
        status=resp.status_code,
        upstream_message=message,
    )
    raise HostingApiError(resp.status_code, message, operation)


def _repo_path(owner: str, repo: str) -> str:
    return f"/repos/{url_quote(owner, safe='')}/{url_quote(repo, safe='')}"


# --- Identity ---


async def verify_token(token: str) -> GitHubIdentity:
    """Resolve the identity behind a token. Invalid or expired tokens raise."""
    async with _client(token) as client:
        resp = await _request(client, "GET", "/user", "verify token")
    data = resp.json()
    logger.info("GitHub token verified", github_username=data["login"])
    return GitHubIdentity(login=data["login"], name=data.get("name"))


# --- Repositories ---


async def list_repositories(token: str) -> AsyncIterator[Repository]:
    """Yield the token owner's repositories, most recently updated first.

    Pages through /user/repos 100 at a time; stops after the first short page.
    """
    page = 1
    async with _client(token) as client:
        while True:
            resp = await _request(
                client,
                "GET",
                "/user/repos",
                "list repositories",
                params={
                    "per_page": PAGE_SIZE,
                    "page": page,
                    "sort": "updated",
                    "direction": "desc",
                },
            )
            items = resp.json()
            for item in items:
                yield Repository.from_api(item)
            if len(items) < PAGE_SIZE:
                return
            page += 1


async def get_file(
    owner: str, repo: str, token: str | None, path: str, ref: str | None = None
) -> RepoFile | None:
    """Fetch a file via the Contents API. Returns None if it does not exist."""
    params = {"ref": ref} if ref else None
    async with _client(token) as client:
        resp = await _request(
            client,
            "GET",
            f"{_repo_path(owner, repo)}/contents/{url_quote(path)}",
            "get file",
            allow=(404,),
            params=params,
        )
    if resp.status_code == 404:
        return None
    data = resp.json()
    if not isinstance(data, dict) or data.get("type", "file") != "file":
        return None
    raw = data.get("content") or ""
    content = base64.b64decode(raw).decode("utf-8") if data.get("encoding", "base64") == "base64" else raw
    return RepoFile(path=data.get("path", path), content=content, sha=data["sha"])


async def get_raw_file(owner: str, repo: str, ref: str, path: str) -> str | None:
    """Fetch a file from the raw content host (public repositories only)."""
    url = f"{settings.github.raw_url.rstrip('/')}/{owner}/{repo}/{ref}/{url_quote(path)}"
    try:
        async with httpx.AsyncClient(timeout=settings.github.timeout_seconds) as client:
            resp = await client.get(url)
    except httpx.HTTPError as e:
        logger.debug("Raw fetch failed", url=url, error=str(e))
        return None
    if resp.status_code != 200:
        return None
    return resp.text


# --- Deploy keys ---


async def register_deploy_key(
    owner: str,
    repo: str,
    token: str,
    title: str,
    public_key: str,
    read_only: bool = False,
) -> int:
    """Register a deploy key on a repository. Returns the key id."""
    async with _client(token) as client:
        resp = await _request(
            client,
            "POST",
            f"{_repo_path(owner, repo)}/keys",
            "register deploy key",
            json={"title": title, "key": public_key.strip(), "read_only": read_only},
        )
    key_id = resp.json()["id"]
    logger.info("Deploy key registered", repository=f"{owner}/{repo}", key_id=key_id)
    return key_id


async def find_deploy_key(owner: str, repo: str, token: str, public_key: str) -> int | None:
    """Find an existing deploy key with the same key material."""
    wanted = " ".join(public_key.split()[:2])
    page = 1
    async with _client(token) as client:
        while True:
            resp = await _request(
                client,
                "GET",
                f"{_repo_path(owner, repo)}/keys",
                "list deploy keys",
                params={"per_page": PAGE_SIZE, "page": page},
            )
            keys = resp.json()
            for key in keys:
                if " ".join(key.get("key", "").split()[:2]) == wanted:
                    return key["id"]
            if len(keys) < PAGE_SIZE:
                return None
            page += 1


# --- Actions secrets ---


def seal_secret(repo_public_key: str, value: str) -> str:
    """Encrypt a value for GitHub Actions using a libsodium sealed box."""
    pk = public.PublicKey(repo_public_key.encode("utf-8"), encoding.Base64Encoder())
    sealed = public.SealedBox(pk).encrypt(value.encode("utf-8"))
    return base64.b64encode(sealed).decode("utf-8")


async def put_actions_secret(owner: str, repo: str, token: str, name: str, value: str) -> None:
    """Create or update a repository Actions secret."""
    repo_path = _repo_path(owner, repo)
    async with _client(token) as client:
        key_resp = await _request(
            client, "GET", f"{repo_path}/actions/secrets/public-key", "get secrets public key"
        )
        key_data = key_resp.json()
        await _request(
            client,
            "PUT",
            f"{repo_path}/actions/secrets/{url_quote(name, safe='')}",
            "put actions secret",
            json={
                "encrypted_value": seal_secret(key_data["key"], value),
                "key_id": key_data["key_id"],
            },
        )
    logger.info("Actions secret stored", repository=f"{owner}/{repo}", secret=name)


# --- Pull requests ---


async def open_pull_request(
    owner: str,
    repo: str,
    token: str,
    branch: str,
    base_branch: str,
    changes: list[FileChange],
    title: str,
    body: str = "",
    commit_message: str | None = None,
) -> PullRequestRef:
    """Create branch from base_branch, commit changes onto it and open a PR."""
    repo_path = _repo_path(owner, repo)
    async with _client(token) as client:
        ref_resp = await _request(
            client,
            "GET",
            f"{repo_path}/git/ref/heads/{url_quote(base_branch)}",
            "resolve base branch",
        )
        base_sha = ref_resp.json()["object"]["sha"]

        # 422 means the branch already exists (re-run); commit on top of it
        await _request(
            client,
            "POST",
            f"{repo_path}/git/refs",
            "create branch",
            allow=(422,),
            json={"ref": f"refs/heads/{branch}", "sha": base_sha},
        )

        commit_sha = None
        for change in changes:
            payload = {
                "message": commit_message or title,
                "content": base64.b64encode(change.content.encode("utf-8")).decode("ascii"),
                "branch": branch,
            }
            if change.sha:
                payload["sha"] = change.sha
            put_resp = await _request(
                client,
                "PUT",
                f"{repo_path}/contents/{url_quote(change.path)}",
                "commit file",
                json=payload,
            )
            commit_sha = put_resp.json().get("commit", {}).get("sha")

        pr_resp = await _request(
            client,
            "POST",
            f"{repo_path}/pulls",
            "open pull request",
            json={"title": title, "head": branch, "base": base_branch, "body": body},
        )
    data = pr_resp.json()
    logger.info(
        "Pull request opened",
        repository=f"{owner}/{repo}",
        number=data["number"],
        branch=branch,
    )
    return PullRequestRef(
        number=data["number"],
        url=data.get("html_url", ""),
        branch=branch,
        commit_sha=commit_sha,
    )


def parse_repo(value: str) -> tuple[str, str] | None:
    """Parse a repository reference into (owner, repo).

    Supports:
      - owner/repo
      - https://github.com/owner/repo[.git][/...]
      - git@github.com:owner/repo.git

    Returns None if the value can't be parsed.
    """
    ref = value.strip()
    if not ref:
        return None

    # SSH format: git@github.com:owner/repo.git
    if ref.startswith("git@"):
        try:
            _, path = ref.split(":", 1)
        except ValueError:
            return None
        parts = path.removesuffix(".git").split("/")
        if len(parts) == 2 and all(parts):
            return parts[0], parts[1]
        return None

    # HTTPS format
    for prefix in ("https://github.com/", "http://github.com/"):
        if ref.startswith(prefix):
            path = ref.removeprefix(prefix).split("#", 1)[0].split("?", 1)[0]
            parts = path.split("/")
            if len(parts) >= 2 and parts[0] and parts[1]:
                return parts[0], parts[1].removesuffix(".git")
            return None

    if "://" in ref:
        return None

    # Short form: owner/repo
    parts = ref.split("/")
    if len(parts) == 2 and all(parts):
        return parts[0], parts[1].removesuffix(".git")
    return None
