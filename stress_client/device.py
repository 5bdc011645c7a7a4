"""Simulated device — the per-device protocol state machine.

States: UNAUTHENTICATED → AUTHENTICATING → ACTIVE
                                  ↑            │ 401 on any call
                                  └─ REAUTHENTICATING ←┘

  AUTHENTICATING retries forever on ``auth_interval``; once a token is issued
  the duplex channel is opened (if enabled), inventory is sent and one update
  check runs before the session settles into ACTIVE.

  ACTIVE multiplexes the inventory timer, the update-check timer and inbound
  duplex frames into a single selection point, so protocol actions of one
  device never overlap.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Union

from .api import APIError, Deployment, DeviceAPI, UnauthorizedError
from .config import RunConfig
from .identity import DeviceIdentity
from .inventory import InventoryBuilder
from .keys import KeyMaterial
from .protocol import (
    MSG_PING,
    ControlFrame,
    ProtoMsg,
    SpawnShellRequest,
    classify,
    error_frame,
    pong_frame,
    shell_unsupported,
)
from .ws_client import DuplexChannel, DuplexError

if TYPE_CHECKING:
    from .fleet import FailureBudget

logger = logging.getLogger(__name__)

STATUS_DOWNLOADING = "downloading"
STATUS_INSTALLING = "installing"
STATUS_REBOOTING = "rebooting"
STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"

DEPLOYMENT_PHASES = (STATUS_DOWNLOADING, STATUS_INSTALLING, STATUS_REBOOTING)

_SUBSTATES = {
    STATUS_DOWNLOADING: "running predownload script",
    STATUS_INSTALLING: "running preinstalling script",
    STATUS_REBOOTING: "running prerebooting script",
}

ChannelFactory = Callable[..., Awaitable[DuplexChannel]]


class State(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    REAUTHENTICATING = "reauthenticating"


class _Tick(enum.Enum):
    INVENTORY = "inventory"
    UPDATE_CHECK = "update-check"


@dataclass(frozen=True)
class _Inbound:
    channel: DuplexChannel
    msg: ProtoMsg


@dataclass(frozen=True)
class _ChannelLost:
    channel: DuplexChannel
    reason: str


_Event = Union[_Tick, _Inbound, _ChannelLost]


class DeviceSession:
    """One simulated device talking to the backend for the life of the process."""

    def __init__(
        self,
        identity: DeviceIdentity,
        keys: KeyMaterial,
        config: RunConfig,
        *,
        budget: Optional[FailureBudget] = None,
        api: Optional[DeviceAPI] = None,
        channel_factory: Optional[ChannelFactory] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.identity = identity
        self.keys = keys
        self.config = config
        self.budget = budget
        self.api = api or DeviceAPI(
            config.server_url,
            device=identity.mac,
            timeout=config.request_timeout,
            verify_tls=not config.insecure_skip_verify,
        )
        self._open_channel = channel_factory or DuplexChannel.open
        self._rng = rng or random.Random()
        self.inventory = InventoryBuilder(
            identity.index,
            config.device_type,
            config.inventory_attributes,
            config.inventory_attributes_random,
            rng=self._rng,
        )

        self.state = State.UNAUTHENTICATED
        self.channel: Optional[DuplexChannel] = None

        # Shared with the duplex reader task
        self._lock = asyncio.Lock()
        self._token: Optional[str] = None
        self._artifact_name = config.artifact_name

        self._inbox: asyncio.Queue[_Event] = asyncio.Queue()
        self._reader: Optional[asyncio.Task] = None
        self._next_inventory = 0.0
        self._next_update = 0.0

        self._handlers = {
            State.UNAUTHENTICATED: self._on_unauthenticated,
            State.AUTHENTICATING: self._on_authenticating,
            State.REAUTHENTICATING: self._on_authenticating,
            State.ACTIVE: self._on_active,
        }

    @property
    def mac(self) -> str:
        return self.identity.mac

    @property
    def artifact_name(self) -> str:
        return self._artifact_name

    @property
    def token(self) -> Optional[str]:
        return self._token

    # ── State machine ─────────────────────────────────────────────

    async def run(self) -> None:
        """Run the device until the task is cancelled."""
        logger.debug("[%s] device started", self.mac)
        try:
            while True:
                await self.step()
        finally:
            await self.close_channel()
            await self.api.aclose()

    async def step(self) -> State:
        """Run the handler for the current state and move to the state it returns."""
        handler = self._handlers[self.state]
        next_state = await handler()
        if next_state is not self.state:
            logger.debug("[%s] %s → %s", self.mac, self.state.value, next_state.value)
        self.state = next_state
        return next_state

    async def _on_unauthenticated(self) -> State:
        return State.AUTHENTICATING

    async def _on_authenticating(self) -> State:
        await self.authenticate()
        if self.config.websocket:
            await self.open_channel()
        try:
            await self.send_inventory()
            await self.update_check()
        except UnauthorizedError:
            return await self._credential_rejected()
        self._reset_timers()
        return State.ACTIVE

    async def _on_active(self) -> State:
        while True:
            event = await self._next_event()
            try:
                await self._dispatch(event)
            except UnauthorizedError:
                return await self._credential_rejected()

    async def _credential_rejected(self) -> State:
        logger.info("[%s] credential rejected, re-authenticating", self.mac)
        await self.close_channel()
        async with self._lock:
            self._token = None
        return State.REAUTHENTICATING

    # ── Event selection ───────────────────────────────────────────

    def _reset_timers(self) -> None:
        now = asyncio.get_running_loop().time()
        self._next_inventory = now + self.config.inventory_interval
        self._next_update = now + self.config.update_interval

    async def _next_event(self) -> _Event:
        loop = asyncio.get_running_loop()
        while True:
            now = loop.time()
            if now >= self._next_inventory:
                self._next_inventory = now + self.config.inventory_interval
                return _Tick.INVENTORY
            if now >= self._next_update:
                self._next_update = now + self.config.update_interval
                return _Tick.UPDATE_CHECK
            if not self._inbox.empty():
                return self._inbox.get_nowait()
            timeout = min(self._next_inventory, self._next_update) - now
            try:
                return await asyncio.wait_for(self._inbox.get(), timeout)
            except asyncio.TimeoutError:
                continue

    async def _dispatch(self, event: _Event) -> None:
        if event is _Tick.INVENTORY:
            await self.send_inventory()
        elif event is _Tick.UPDATE_CHECK:
            await self.update_check()
        elif isinstance(event, _Inbound):
            if event.channel is self.channel:
                await self.handle_frame(event.msg)
            else:
                logger.debug("[%s] dropping frame from a closed websocket", self.mac)
        elif isinstance(event, _ChannelLost):
            if event.channel is self.channel:
                logger.warning("[%s] websocket lost (%s), reopening after next authentication",
                               self.mac, event.reason)
                self.channel = None
                self._reader = None

    # ── Authentication ────────────────────────────────────────────

    async def authenticate(self) -> str:
        """Obtain a bearer token, retrying on ``auth_interval`` until one is issued."""
        identity_data = {"mac": self.mac, **self.config.extra_identity}
        attempts = 0
        while True:
            attempts += 1
            try:
                token = await self.api.authenticate(
                    identity_data, self.keys, self.identity.tenant_token,
                )
            except APIError as exc:
                logger.debug("[%s] not able to authorize device: %s", self.mac, exc)
            else:
                async with self._lock:
                    self._token = token
                logger.info("[%s] authenticated (attempt %d)", self.mac, attempts)
                return token
            await asyncio.sleep(self.config.auth_interval)

    # ── Inventory & updates ───────────────────────────────────────

    async def send_inventory(self) -> bool:
        async with self._lock:
            token, artifact_name = self._token, self._artifact_name
        attributes = self.inventory.build(artifact_name)
        try:
            await self.api.submit_inventory(token or "", attributes)
        except UnauthorizedError:
            raise
        except APIError as exc:
            logger.warning("[%s] failed sending inventory: %s", self.mac, exc)
            return False
        return True

    async def update_check(self) -> Optional[str]:
        """Poll for a deployment and run it; return its terminal status, if any."""
        async with self._lock:
            token, artifact_name = self._token, self._artifact_name
        try:
            deployment = await self.api.next_deployment(
                token or "",
                self.config.device_type,
                artifact_name,
                self.config.rootfs_checksum,
            )
        except UnauthorizedError:
            raise
        except APIError as exc:
            logger.warning("[%s] failed checking for updates: %s", self.mac, exc)
            return None
        if deployment is None:
            return None

        outcome = await self.run_deployment(deployment)
        if deployment.artifact_name:
            async with self._lock:
                self._artifact_name = deployment.artifact_name
        # Report the new artifact right away instead of waiting for the timer
        await self.send_inventory()
        return outcome

    async def run_deployment(self, deployment: Deployment) -> str:
        """Walk the deployment through its phases, one status report each."""
        terminal = self.budget.next_outcome() if self.budget else STATUS_SUCCESS
        logger.info("[%s] deployment %s (%s) → %s",
                    self.mac, deployment.id, deployment.artifact_name or "?", terminal)

        for n, status in enumerate((*DEPLOYMENT_PHASES, terminal)):
            if n:
                await asyncio.sleep(self._phase_delay())
            if status == STATUS_FAILURE:
                await self._upload_fail_log(deployment)
            await self._report(deployment, status)
            if status == STATUS_DOWNLOADING and deployment.source_uri:
                await self._download(deployment.source_uri)
        return terminal

    def _phase_delay(self) -> float:
        jitter = self.config.deployment_jitter
        return self.config.deployment_time + (self._rng.uniform(0, jitter) if jitter else 0.0)

    async def _report(self, deployment: Deployment, status: str) -> None:
        substate = _SUBSTATES.get(status) if self.config.substate else None
        async with self._lock:
            token = self._token
        try:
            await self.api.report_status(token or "", deployment.id, status, substate)
        except UnauthorizedError:
            raise
        except APIError as exc:
            logger.warning("[%s] error reporting deployment status %s: %s",
                           self.mac, status, exc)

    async def _upload_fail_log(self, deployment: Deployment) -> None:
        async with self._lock:
            token = self._token
        try:
            await self.api.upload_log(token or "", deployment.id, self.config.fail_message)
        except UnauthorizedError:
            raise
        except APIError as exc:
            logger.warning("[%s] failed to deliver failure logs: %s", self.mac, exc)

    async def _download(self, url: str) -> None:
        try:
            size = await self.api.download(url)
        except APIError as exc:
            logger.warning("[%s] failed to download update: %s", self.mac, exc)
            return
        logger.debug("[%s] downloaded %d bytes to nowhere", self.mac, size)

    # ── Duplex channel ────────────────────────────────────────────

    async def open_channel(self) -> bool:
        async with self._lock:
            token = self._token
        try:
            channel = await self._open_channel(
                self.config.server_url,
                token or "",
                device=self.mac,
                verify_tls=not self.config.insecure_skip_verify,
                ping_interval=self.config.websocket_ping_interval,
                ping_timeout=self.config.websocket_ping_timeout,
                max_size=self.config.websocket_max_message_size,
            )
        except DuplexError as exc:
            logger.warning("[%s] websocket unavailable: %s", self.mac, exc)
            return False
        self.channel = channel
        self._reader = asyncio.create_task(self._read_channel(channel))
        return True

    async def close_channel(self) -> None:
        channel, self.channel = self.channel, None
        reader, self._reader = self._reader, None
        if channel is not None:
            await channel.close()
        if reader is not None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    async def _read_channel(self, channel: DuplexChannel) -> None:
        try:
            while True:
                msg = await channel.receive()
                await self._inbox.put(_Inbound(channel, msg))
        except DuplexError as exc:
            await self._inbox.put(_ChannelLost(channel, str(exc)))

    async def handle_frame(self, msg: ProtoMsg) -> Optional[ProtoMsg]:
        """Answer one inbound frame; return the reply that was sent, if any."""
        logger.info("[%s] websocket msg: proto=%#x type=%s sid=%s",
                    self.mac, msg.proto, msg.typ, msg.sid)
        request = classify(msg)
        if isinstance(request, SpawnShellRequest):
            reply = shell_unsupported(msg)
        elif isinstance(request, ControlFrame):
            if msg.typ != MSG_PING:
                if request.error:
                    logger.warning("[%s] peer reported error: %s", self.mac, request.error)
                return None
            reply = pong_frame(msg)
        else:
            reply = error_frame(msg, f"unsupported request proto={msg.proto:#x} type={msg.typ!r}")

        channel = self.channel
        if channel is None:
            return None
        try:
            await channel.send(reply)
        except DuplexError as exc:
            logger.warning("[%s] websocket reply failed: %s", self.mac, exc)
            return None
        return reply
