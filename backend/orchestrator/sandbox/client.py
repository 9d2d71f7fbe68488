"""SandboxClient: per-session facade over the agent running inside a sandbox.

The sandbox address is resolved from the registry on every call, so a client
created before a sandbox was recreated keeps working against the new one.
Every successful round-trip advances the sandbox's ``last_activity_at``.
"""

from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_delay, wait_fixed

from orchestrator.core.config import Settings, get_settings
from orchestrator.core.exceptions import (
    NotFoundError,
    OperationFailedError,
    SandboxUnavailableError,
)
from orchestrator.sandbox.registry import SandboxRegistry
from orchestrator.sandbox.sse import EventStream
from orchestrator.sandbox.types import (
    AgentHealth,
    FileEntry,
    GitPullResult,
    GitRevertResult,
    SandboxStatus,
)

logger = structlog.get_logger(__name__)

PROJECT_DIR = "/app/project"


async def wait_for_agent(
    http_client: httpx.AsyncClient,
    address: str,
    timeout: float,
    interval: float = 1.0,
    request_timeout: float = 2.0,
) -> None:
    """Poll ``{address}/health`` until it answers 2xx.

    Raises the last httpx error once ``timeout`` seconds have passed.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_delay(timeout),
        wait=wait_fixed(interval),
        retry=retry_if_exception_type(httpx.HTTPError),
        reraise=True,
    ):
        with attempt:
            response = await http_client.get(f"{address}/health", timeout=request_timeout)
            response.raise_for_status()


def _relative(path: str) -> str:
    if path.startswith(f"{PROJECT_DIR}/"):
        return path[len(PROJECT_DIR) + 1 :]
    return path.lstrip("/")


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)
    return str(body)


class SandboxClient:
    def __init__(
        self,
        session_id: str,
        registry: SandboxRegistry,
        http_client: httpx.AsyncClient,
        settings: Settings | None = None,
    ):
        self.session_id = session_id
        self.registry = registry
        self.http = http_client
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _address(self) -> str:
        sandbox = await self.registry.get(self.session_id)
        if sandbox is None or sandbox.status != SandboxStatus.RUNNING or not sandbox.address:
            status = sandbox.status.value if sandbox else "absent"
            raise SandboxUnavailableError(self.session_id, f"sandbox is {status}")
        return sandbox.address

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        address = await self._address()
        try:
            response = await self.http.request(
                method,
                f"{address}{path}",
                json=json,
                timeout=timeout or self.settings.file_op_timeout,
            )
        except httpx.TransportError as e:
            logger.warning(
                "sandbox_request_failed",
                session_id=self.session_id,
                path=path,
                error=repr(e),
                error_type=type(e).__name__,
            )
            raise SandboxUnavailableError(self.session_id, f"{path}: {e!r}") from e

        await self.registry.touch(self.session_id)
        return response

    def _raise_for_status(self, response: httpx.Response, what: str) -> None:
        if response.status_code == 404:
            raise NotFoundError(f"{what}: not found")
        if response.status_code >= 400:
            raise OperationFailedError(f"{what} failed: HTTP {response.status_code} - {_error_detail(response)}")

    async def _stream(self, operation: str, path: str, body: dict[str, Any]) -> EventStream:
        address = await self._address()
        request = self.http.build_request(
            "POST",
            f"{address}{path}",
            json=body,
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(self.settings.stream_timeout, connect=self.settings.health_timeout),
        )
        await self.registry.touch(self.session_id)
        return EventStream(self.http, request, self.session_id, operation)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def get_agent_health(self) -> AgentHealth | None:
        """Agent health, or None when the sandbox cannot be reached at all."""
        try:
            address = await self._address()
            response = await self.http.get(f"{address}/agent/health", timeout=self.settings.health_timeout)
        except (SandboxUnavailableError, httpx.HTTPError):
            return None

        if response.status_code >= 400:
            return None
        try:
            return AgentHealth.model_validate(response.json())
        except ValueError:
            return None

    async def wait_for_ready(self, timeout: float | None = None, interval: float = 1.0) -> bool:
        """Poll agent health until it reports ready. Returns False on timeout."""
        timeout = timeout if timeout is not None else self.settings.deploy_ready_timeout
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(timeout),
                wait=wait_fixed(interval),
                retry=retry_if_exception_type(SandboxUnavailableError),
                reraise=True,
            ):
                with attempt:
                    health = await self.get_agent_health()
                    if health is None or not (health.alive and health.ready):
                        raise SandboxUnavailableError(self.session_id, "agent not ready")
        except SandboxUnavailableError:
            return False
        return True

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def list_files(self) -> list[FileEntry]:
        response = await self._request("POST", "/api/files", json={"cwd": PROJECT_DIR})
        self._raise_for_status(response, "list files")
        return [FileEntry.model_validate(entry) for entry in response.json().get("files", [])]

    async def read_text(self, path: str) -> str:
        response = await self._request(
            "POST",
            "/api/files/read",
            json={"cwd": PROJECT_DIR, "filepath": _relative(path)},
        )
        if response.status_code == 404:
            raise NotFoundError(f"File not found: {path}")
        self._raise_for_status(response, f"read {path}")
        return response.json()["content"]

    async def read_file(self, path: str) -> bytes:
        return (await self.read_text(path)).encode("utf-8")

    async def write_file(self, path: str, content: bytes | str) -> None:
        if isinstance(content, bytes):
            content = content.decode("utf-8")
        response = await self._request(
            "POST",
            "/api/files/write",
            json={"cwd": PROJECT_DIR, "filepath": _relative(path), "content": content},
        )
        self._raise_for_status(response, f"write {path}")

    async def file_exists(self, path: str) -> bool:
        try:
            await self.read_text(path)
        except NotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    # Git
    # ------------------------------------------------------------------

    async def get_head_commit(self) -> str:
        response = await self._request(
            "POST",
            "/api/git/head",
            json={"cwd": PROJECT_DIR},
            timeout=self.settings.git_op_timeout,
        )
        self._raise_for_status(response, "read HEAD")
        return response.json()["commitSha"]

    async def pull(self, branch: str, credential: str | None = None) -> GitPullResult:
        response = await self._request(
            "POST",
            "/git/pull",
            json={"branch": branch, "githubToken": credential},
            timeout=self.settings.git_op_timeout,
        )
        if response.status_code >= 400:
            return GitPullResult(success=False, error=f"HTTP {response.status_code} - {_error_detail(response)}")
        data = response.json()
        return GitPullResult(
            success=bool(data.get("success")),
            changed=bool(data.get("changed")),
            commits_pulled=int(data.get("commitsPulled") or 0),
            error=data.get("error"),
        )

    async def revert(self, commit_sha: str, credential: str | None = None) -> GitRevertResult:
        """Hard-reset the working tree to ``commit_sha`` and force-push.

        A failed revert leaves the sandbox where it was; the result says so
        instead of raising. An unreachable sandbox still raises
        SandboxUnavailableError.
        """
        response = await self._request(
            "POST",
            "/api/git/revert",
            json={"cwd": PROJECT_DIR, "commitSha": commit_sha, "githubToken": credential},
            timeout=self.settings.git_op_timeout,
        )
        if response.status_code >= 400:
            result = GitRevertResult(success=False, error=f"HTTP {response.status_code} - {_error_detail(response)}")
        else:
            data = response.json()
            result = GitRevertResult(
                success=bool(data.get("success")),
                commit_sha=data.get("commitSha") or None,
                error=data.get("error"),
            )

        logger.info(
            "sandbox_revert",
            session_id=self.session_id,
            commit_sha=commit_sha,
            success=result.success,
            error=result.error,
        )
        return result

    # ------------------------------------------------------------------
    # Agent operations
    # ------------------------------------------------------------------

    async def cancel_build(self, job_id: str) -> bool:
        try:
            response = await self._request("POST", "/api/cancel", json={"buildId": job_id})
        except SandboxUnavailableError as e:
            logger.warning("cancel_build_unreachable", session_id=self.session_id, job_id=job_id, error=str(e))
            return False
        return response.status_code < 400

    async def stream_plan(
        self,
        prompt: str,
        cwd: str = PROJECT_DIR,
        resume: str | None = None,
        no_test: bool = True,
        images: list[dict[str, Any]] | None = None,
    ) -> EventStream:
        return await self._stream(
            "plan",
            "/api/plan",
            {"query": prompt, "cwd": cwd, "noTest": no_test, "resume": resume, "images": images},
        )

    async def stream_build_task(self, job_id: str, task: dict[str, Any], credential: str | None = None) -> EventStream:
        return await self._stream(
            "build",
            "/api/build",
            {"cwd": PROJECT_DIR, "buildId": job_id, "task": task, "githubToken": credential},
        )

    async def stream_submit(
        self,
        title: str,
        base_branch: str = "main",
        credential: str | None = None,
    ) -> EventStream:
        return await self._stream(
            "submit",
            "/api/submit",
            {"cwd": PROJECT_DIR, "title": title, "baseBranch": base_branch, "githubToken": credential},
        )

    async def stream_deploy(self) -> EventStream:
        return await self._stream("deploy", "/api/deploy", {"cwd": PROJECT_DIR})
