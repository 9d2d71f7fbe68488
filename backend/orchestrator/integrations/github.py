"""GitHub App client: installation tokens, repositories, refs and pull requests.

Implements the ``VcsHost`` protocol used by the submit worker. Transient
GitHub failures (5xx, transport errors) are retried with backoff; 4xx
responses surface immediately as GitOperationError.
"""

import base64
import re
from datetime import UTC, datetime, timedelta
from typing import Protocol

import httpx
import jwt
import structlog
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from orchestrator.core.config import Settings, get_settings
from orchestrator.core.exceptions import GitOperationError

logger = structlog.get_logger(__name__)

PR_NUMBER_PATTERN = re.compile(r"/pull/(\d+)")


def parse_pr_number(pr_url: str | None) -> int | None:
    """Extract the pull request number from a PR URL."""
    if not pr_url:
        return None
    match = PR_NUMBER_PATTERN.search(pr_url)
    return int(match.group(1)) if match else None


class PullRequest(BaseModel):
    number: int
    url: str
    state: str
    merged: bool = False


class VcsHost(Protocol):
    async def get_installation_token(self, installation_id: str) -> str: ...

    async def create_repo(self, installation_id: str, org: str, name: str, private: bool = True) -> dict: ...

    async def push(self, installation_id: str, owner: str, repo: str, branch: str, sha: str, force: bool = False) -> dict: ...

    async def open_pull_request(
        self,
        installation_id: str,
        owner: str,
        repo: str,
        title: str,
        head: str,
        base: str,
        body: str = "",
    ) -> PullRequest: ...

    async def update_pull_request_state(
        self,
        installation_id: str,
        owner: str,
        repo: str,
        number: int,
        state: str,
    ) -> PullRequest: ...


class _TransientGitHubError(GitOperationError):
    pass


def _pull_request(data: dict) -> PullRequest:
    return PullRequest(
        number=data["number"],
        url=data["html_url"],
        state=data.get("state", "open"),
        merged=bool(data.get("merged")),
    )


class GitHubClient:
    """Client for GitHub App API operations."""

    def __init__(self, settings: Settings | None = None, http_client: httpx.AsyncClient | None = None):
        self.settings = settings or get_settings()
        self.http = http_client or httpx.AsyncClient(timeout=30.0)
        self._tokens: dict[str, tuple[str, datetime]] = {}

    @property
    def base_url(self) -> str:
        return self.settings.github_api_url.rstrip("/")

    def _get_jwt(self) -> str:
        """Generate a JWT for GitHub App authentication."""
        if not self.settings.github_app_id or not self.settings.github_private_key:
            raise GitOperationError("GitHub App not configured")

        now = datetime.now(UTC)
        payload = {
            "iat": int(now.timestamp()) - 60,  # clock drift allowance
            "exp": int((now + timedelta(minutes=10)).timestamp()),
            "iss": self.settings.github_app_id,
        }

        # Raw PEM or base64-encoded PEM
        private_key = self.settings.github_private_key
        if not private_key.startswith("-----BEGIN"):
            private_key = base64.b64decode(private_key).decode()

        return jwt.encode(payload, private_key, algorithm="RS256")

    @retry(
        retry=retry_if_exception_type((_TransientGitHubError, httpx.TransportError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "github_request_retrying",
            attempt=rs.attempt_number,
            sleep_seconds=rs.next_action.sleep,
        ),
    )
    async def _send(self, method: str, endpoint: str, token: str, data: dict | None = None) -> httpx.Response:
        response = await self.http.request(
            method,
            f"{self.base_url}{endpoint}",
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            json=data,
        )
        if response.status_code >= 500:
            raise _TransientGitHubError(f"GitHub API error ({response.status_code}): {response.text}")
        return response

    async def get_installation_token(self, installation_id: str) -> str:
        """Installation access token, cached until shortly before it expires."""
        cached = self._tokens.get(installation_id)
        if cached and datetime.now(UTC) < cached[1]:
            return cached[0]

        response = await self._send(
            "POST",
            f"/app/installations/{installation_id}/access_tokens",
            self._get_jwt(),
        )
        if response.status_code != 201:
            raise GitOperationError(f"Failed to get access token: {response.text}")

        token = response.json()["token"]
        self._tokens[installation_id] = (token, datetime.now(UTC) + timedelta(minutes=55))
        return token

    async def _request(
        self,
        installation_id: str,
        method: str,
        endpoint: str,
        data: dict | None = None,
        allow: tuple[int, ...] = (),
    ) -> httpx.Response:
        token = await self.get_installation_token(installation_id)
        response = await self._send(method, endpoint, token, data)
        if response.status_code >= 400 and response.status_code not in allow:
            raise GitOperationError(f"GitHub API error ({response.status_code}): {response.text}")
        return response

    # Repository operations

    async def create_repo(self, installation_id: str, org: str, name: str, private: bool = True) -> dict:
        response = await self._request(
            installation_id,
            "POST",
            f"/orgs/{org}/repos",
            data={"name": name, "private": private, "auto_init": True},
        )
        logger.info("github_repo_created", org=org, repo=name)
        return response.json()

    async def push(
        self,
        installation_id: str,
        owner: str,
        repo: str,
        branch: str,
        sha: str,
        force: bool = False,
    ) -> dict:
        """Point ``branch`` at ``sha``, creating the ref if it does not exist."""
        response = await self._request(
            installation_id,
            "PATCH",
            f"/repos/{owner}/{repo}/git/refs/heads/{branch}",
            data={"sha": sha, "force": force},
            allow=(404, 422),
        )
        if response.status_code < 400:
            return response.json()

        response = await self._request(
            installation_id,
            "POST",
            f"/repos/{owner}/{repo}/git/refs",
            data={"ref": f"refs/heads/{branch}", "sha": sha},
        )
        return response.json()

    # Pull request operations

    async def find_pull_request(
        self,
        installation_id: str,
        owner: str,
        repo: str,
        head: str,
    ) -> PullRequest | None:
        response = await self._request(
            installation_id,
            "GET",
            f"/repos/{owner}/{repo}/pulls?head={owner}:{head}&state=all",
        )
        pulls = response.json()
        return _pull_request(pulls[0]) if pulls else None

    async def open_pull_request(
        self,
        installation_id: str,
        owner: str,
        repo: str,
        title: str,
        head: str,
        base: str,
        body: str = "",
    ) -> PullRequest:
        """Open a PR for ``head``; an existing PR for the branch is reopened and returned."""
        response = await self._request(
            installation_id,
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            data={"title": title, "body": body, "head": head, "base": base},
            allow=(422,),
        )
        if response.status_code < 400:
            pr = _pull_request(response.json())
            logger.info("github_pull_request_opened", repo=f"{owner}/{repo}", number=pr.number)
            return pr

        existing = await self.find_pull_request(installation_id, owner, repo, head)
        if existing is None:
            raise GitOperationError(f"GitHub API error (422): {response.text}")
        if existing.state == "closed" and not existing.merged:
            existing = await self.update_pull_request_state(installation_id, owner, repo, existing.number, "open")
        return existing

    async def update_pull_request_state(
        self,
        installation_id: str,
        owner: str,
        repo: str,
        number: int,
        state: str,
    ) -> PullRequest:
        if state not in ("open", "closed"):
            raise ValueError(f"Unsupported pull request state: {state}")
        response = await self._request(
            installation_id,
            "PATCH",
            f"/repos/{owner}/{repo}/pulls/{number}",
            data={"state": state},
        )
        return _pull_request(response.json())

    async def merge_pull_request(
        self,
        installation_id: str,
        owner: str,
        repo: str,
        number: int,
        method: str = "squash",
    ) -> dict:
        response = await self._request(
            installation_id,
            "PUT",
            f"/repos/{owner}/{repo}/pulls/{number}/merge",
            data={"merge_method": method},
        )
        return response.json()

    async def aclose(self) -> None:
        await self.http.aclose()
