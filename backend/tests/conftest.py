"""Shared test fixtures: SQLite-backed registry, fakeredis, a fake runtime and a fake in-sandbox agent."""

import asyncio
import json
from collections.abc import Awaitable, Callable

import httpx
import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy.ext.asyncio import create_async_engine

import orchestrator.db.models  # noqa: F401
from orchestrator.core.config import Settings
from orchestrator.core.exceptions import RuntimeResourceNotFound
from orchestrator.core.locking import RedisLock
from orchestrator.db.base import Base, build_session_factory
from orchestrator.queue.coordinator import JobCoordinator
from orchestrator.sandbox.manager import SandboxManager
from orchestrator.sandbox.registry import SandboxRegistry
from orchestrator.sandbox.types import RuntimeHandle, RuntimeSpec, SandboxSpec, ServicesMode

AGENT_ADDRESS = "http://sandbox-agent:9000"


def sse(*events: tuple[str, dict]) -> bytes:
    """Encode (event, data) pairs as a text/event-stream body."""
    return "".join(f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in events).encode()


def sse_response(body: bytes) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)


class FakeRuntime:
    """In-memory ContainerRuntime."""

    name = "fake"

    def __init__(self, address: str = AGENT_ADDRESS):
        self.address = address
        self.resources: dict[str, str] = {}  # ref -> running | stopped
        self.created: list[RuntimeSpec] = []
        self.destroyed: list[str] = []
        self.fail_create: Exception | None = None
        self.fail_destroy: dict[str, Exception] = {}
        self.on_create: Callable[[RuntimeSpec], Awaitable[None]] | None = None

    def _handle(self, ref: str) -> RuntimeHandle:
        return RuntimeHandle(address=self.address, resource_ref=ref, preview_url=f"http://{ref}.preview.test")

    async def create(self, spec: RuntimeSpec) -> RuntimeHandle:
        await asyncio.sleep(0)
        self.created.append(spec)
        if self.on_create is not None:
            await self.on_create(spec)
        if self.fail_create is not None:
            # Simulate a half-created container
            self.resources[spec.name] = "running"
            raise self.fail_create
        self.resources[spec.name] = "running"
        return self._handle(spec.name)

    async def destroy(self, resource_ref: str) -> None:
        await asyncio.sleep(0)
        if resource_ref in self.fail_destroy:
            raise self.fail_destroy[resource_ref]
        if resource_ref not in self.resources:
            raise RuntimeResourceNotFound(resource_ref)
        del self.resources[resource_ref]
        self.destroyed.append(resource_ref)

    async def stop(self, resource_ref: str) -> None:
        if resource_ref not in self.resources:
            raise RuntimeResourceNotFound(resource_ref)
        self.resources[resource_ref] = "stopped"

    async def start(self, resource_ref: str) -> RuntimeHandle:
        if resource_ref not in self.resources:
            raise RuntimeResourceNotFound(resource_ref)
        self.resources[resource_ref] = "running"
        return self._handle(resource_ref)

    async def is_running(self, resource_ref: str) -> bool:
        return self.resources.get(resource_ref) == "running"


class FakeAgent:
    """httpx.MockTransport handler standing in for the agent inside a sandbox."""

    def __init__(self):
        self.requests: list[tuple[str, str, dict | None]] = []
        self.healthy = True
        self.health = {"alive": True, "ready": True, "processing": False, "uptime": 12.5}
        self.files: dict[str, str] = {}
        self.head = "a1b2c3d4e5f6"
        self.revert_result: dict = {"success": True}
        self.streams: dict[str, bytes] = {
            "/api/plan": sse(("done", {"status": "success"})),
            "/api/build": sse(
                ("tool_call", {"name": "edit_file"}),
                ("message", {"text": "Done with the task"}),
                ("done", {"success": True}),
            ),
            "/api/submit": sse(
                ("review_started", {}),
                ("commit_started", {}),
                ("pr_started", {}),
                ("pr_completed", {"prUrl": "https://github.com/acme/shop/pull/17"}),
                ("done", {"success": True}),
            ),
            "/api/deploy": sse(
                ("step_started", {"name": "build_images"}),
                ("service_deployed", {"key": "web", "url": "https://web.acme.app"}),
                ("done", {"success": True}),
            ),
        }
        self.stream_hooks: dict[str, Callable[[httpx.Request], Awaitable[httpx.Response]]] = {}

    @staticmethod
    def event_stream(*events: tuple[str, dict]) -> httpx.Response:
        return sse_response(sse(*events))

    def reply(self, path: str, *events: tuple[str, dict]) -> None:
        """Set the event sequence a streaming endpoint answers with."""
        self.streams[path] = sse(*events)

    def paths(self) -> list[str]:
        return [path for _method, path, _body in self.requests]

    def bodies(self, path: str) -> list[dict | None]:
        return [body for _method, p, body in self.requests if p == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, path, body))

        if path == "/health":
            return httpx.Response(200 if self.healthy else 503, json={"status": "ok"})
        if path == "/agent/health":
            if not self.healthy:
                return httpx.Response(503)
            return httpx.Response(200, json=self.health)
        if path == "/api/files":
            return httpx.Response(
                200,
                json={"files": [{"name": name, "path": name, "type": "file"} for name in sorted(self.files)]},
            )
        if path == "/api/files/read":
            content = self.files.get(body["filepath"])
            if content is None:
                return httpx.Response(404, json={"error": "File not found"})
            return httpx.Response(200, json={"content": content})
        if path == "/api/files/write":
            self.files[body["filepath"]] = body["content"]
            return httpx.Response(200, json={"success": True})
        if path == "/api/git/head":
            return httpx.Response(200, json={"commitSha": self.head})
        if path == "/api/git/revert":
            return httpx.Response(200, json={"commitSha": body["commitSha"], **self.revert_result})
        if path == "/git/pull":
            return httpx.Response(200, json={"success": True, "changed": False, "commitsPulled": 0})
        if path == "/api/cancel":
            return httpx.Response(200, json={"success": True})
        if path in self.stream_hooks:
            return await self.stream_hooks[path](request)
        if path in self.streams:
            return sse_response(self.streams[path])
        return httpx.Response(404, json={"error": f"no route {path}"})


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        debug=True,
        internal_api_token="test-token",
        platform_anthropic_api_key="sk-platform",
        boot_timeout=1.0,
        health_timeout=1.0,
        deploy_ready_timeout=1.0,
        stream_timeout=10.0,
        task_step_timeout=10.0,
        create_lock_wait=5.0,
        cleanup_threshold_minutes=60,
        job_max_restarts=3,
    )


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orchestrator.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
async def redis():
    """Fake Redis instance for testing."""
    fake_redis = FakeAsyncRedis(decode_responses=True)
    yield fake_redis
    await fake_redis.flushall()
    await fake_redis.aclose()


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def agent():
    return FakeAgent()


@pytest.fixture
async def http_client(agent):
    async with httpx.AsyncClient(transport=httpx.MockTransport(agent)) as client:
        yield client


@pytest.fixture
def registry(session_factory):
    return SandboxRegistry(session_factory)


@pytest.fixture
def manager(registry, runtime, redis, http_client, settings):
    return SandboxManager(
        registry,
        runtime,
        RedisLock(redis, poll_interval=0.01),
        http_client,
        settings,
        agent_poll_interval=0.01,
    )


@pytest.fixture
def coordinator(session_factory, redis, manager, settings):
    return JobCoordinator(session_factory, redis, manager, settings, lock=RedisLock(redis, poll_interval=0.01))


@pytest.fixture
def spec():
    return SandboxSpec(
        session_id="sess-1",
        project_id="proj-1",
        repo_url="https://github.com/acme/shop.git",
        branch="main",
        credential="ghs_token",
        services_mode=ServicesMode.FULL,
    )


@pytest.fixture
async def running_sandbox(manager, spec):
    return await manager.create_sandbox(spec)
