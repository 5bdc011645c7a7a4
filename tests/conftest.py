"""pytest configuration and shared fakes for the fleet stress client tests."""

from __future__ import annotations

import asyncio
import json
import time

import httpx
import pytest

from stress_client.api import (
    URL_AUTH_REQUEST,
    URL_DEPLOYMENTS_NEXT,
    URL_INVENTORY,
    DeviceAPI,
)
from stress_client.config import RunConfig
from stress_client.identity import DeviceIdentity, mac_from_prefix
from stress_client.keys import KeyMaterial
from stress_client.ws_client import DuplexError


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class FakeBackend:
    """Scripted device API backend for :class:`httpx.MockTransport`.

    Each ``*_statuses`` list is consumed front to back; once empty the
    endpoint answers with its success status.
    """

    def __init__(self) -> None:
        self.token = "token-1"
        self.auth_statuses: list[int] = []
        self.inventory_statuses: list[int] = []
        self.status_statuses: list[int | Exception] = []
        self.log_statuses: list[int] = []
        self.deployments: list[tuple[int, object]] = []
        self.artifact_body = b"\x00" * 4096
        self.artifact_headers: dict[str, str] = {}
        self.requests: list[dict] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, suffix: str) -> list[dict]:
        return [r for r in self.requests if r["path"].endswith(suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = None
        if request.content:
            try:
                body = json.loads(request.content)
            except ValueError:
                body = request.content
        self.requests.append({
            "method": request.method,
            "path": path,
            "body": body,
            "headers": request.headers,
            "at": time.monotonic(),
        })

        if path == URL_AUTH_REQUEST:
            status = self.auth_statuses.pop(0) if self.auth_statuses else 200
            return httpx.Response(status, text=self.token if status == 200 else "")
        if path == URL_INVENTORY:
            status = self.inventory_statuses.pop(0) if self.inventory_statuses else 200
            return httpx.Response(status)
        if path == URL_DEPLOYMENTS_NEXT:
            if not self.deployments:
                return httpx.Response(204)
            status, payload = self.deployments.pop(0)
            if isinstance(payload, (bytes, str)):
                return httpx.Response(status, content=payload)
            return httpx.Response(status, json=payload)
        if path.endswith("/status"):
            outcome = self.status_statuses.pop(0) if self.status_statuses else 204
            if isinstance(outcome, Exception):
                raise outcome
            return httpx.Response(outcome)
        if path.endswith("/log"):
            status = self.log_statuses.pop(0) if self.log_statuses else 204
            return httpx.Response(status)
        if request.method == "GET":
            return httpx.Response(200, content=self.artifact_body, headers=self.artifact_headers)
        return httpx.Response(404)

    def inventory_value(self, name: str, call: int = -1):
        attributes = self.calls("/attributes")[call]["body"]
        return next(a["value"] for a in attributes if a["name"] == name)

    def statuses(self) -> list[str]:
        return [r["body"]["status"] for r in self.calls("/status")]


class FakeChannel:
    """In-memory stand-in for :class:`stress_client.ws_client.DuplexChannel`."""

    def __init__(self, token: str = "") -> None:
        self.token = token
        self.sent: list = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    def feed(self, item) -> None:
        self._incoming.put_nowait(item)

    async def send(self, msg) -> None:
        if self.closed:
            raise DuplexError("Channel is closed")
        self.sent.append(msg)

    async def receive(self):
        item = await self._incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(DuplexError("Channel is closed"))


class ChannelFactory:
    """Records every channel a session opens."""

    def __init__(self) -> None:
        self.opened: list[FakeChannel] = []
        self.kwargs: list[dict] = []

    async def __call__(self, server_url: str, token: str, **kwargs) -> FakeChannel:
        channel = FakeChannel(token)
        self.opened.append(channel)
        self.kwargs.append(kwargs)
        return channel


@pytest.fixture(scope="session")
def key_material() -> KeyMaterial:
    return KeyMaterial.generate(2048)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def run_config(tmp_path) -> RunConfig:
    return RunConfig(
        server_url="https://backend.test",
        count=3,
        keys_dir=str(tmp_path / "keys"),
        key_bits=1024,
        auth_interval=0.02,
        inventory_interval=10.0,
        update_interval=10.0,
        deployment_time=0.0,
        inventory_attributes=["client_version:1.0"],
    )


@pytest.fixture
def make_session(backend, key_material, run_config):
    """Build a DeviceSession wired to the fake backend."""
    from stress_client.device import DeviceSession

    def _make(index: int = 0, config: RunConfig | None = None, **kwargs):
        cfg = config or run_config
        identity = DeviceIdentity(index, mac_from_prefix(cfg.mac_prefix, index), cfg.tenant_token)
        api = DeviceAPI(cfg.server_url, device=identity.mac, transport=backend.transport)
        return DeviceSession(identity, key_material, cfg, api=api, **kwargs)

    return _make
