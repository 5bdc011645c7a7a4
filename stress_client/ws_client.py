"""Device-connect websocket channel.

One persistent connection per device, authenticated with the device's bearer
token and framed with msgpack (see :mod:`stress_client.protocol`).

  - writes are serialized through a lock, so any number of producers may send
  - reads belong to a single consumer calling :meth:`DuplexChannel.receive`
  - a keep-alive task pings the server; an unanswered ping closes the channel,
    which the consumer observes as :class:`DuplexError` from ``receive()``
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .protocol import ProtocolError, ProtoMsg

logger = logging.getLogger(__name__)

DEVICE_CONNECT_PATH = "/api/devices/v1/deviceconnect/connect"

DEFAULT_MAX_MESSAGE_SIZE = 8192
DEFAULT_PING_INTERVAL = 3600.0
DEFAULT_PING_TIMEOUT = 30.0
_OPEN_TIMEOUT = 10.0
_CLOSE_TIMEOUT = 4.0


class DuplexError(Exception):
    """Raised when the channel cannot be opened or has failed."""


def device_connect_url(server_url: str) -> str:
    """Derive the websocket URL from the backend's HTTP URL."""
    url = server_url.rstrip("/")
    if url.startswith("https://"):
        return url.replace("https://", "wss://", 1) + DEVICE_CONNECT_PATH
    url = url.replace("http://", "ws://", 1)
    if not url.startswith("ws"):
        url = "ws://" + url
    return url + DEVICE_CONNECT_PATH


class DuplexChannel:
    """An open device-connect connection with keep-alive health checking."""

    def __init__(
        self,
        ws: ClientConnection,
        *,
        device: str = "",
        ping_interval: float = DEFAULT_PING_INTERVAL,
        ping_timeout: float = DEFAULT_PING_TIMEOUT,
    ) -> None:
        self._ws = ws
        self.device = device
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self._write_lock = asyncio.Lock()
        self._closed = False
        self._keepalive: Optional[asyncio.Task] = asyncio.create_task(self._keepalive_loop())

    @classmethod
    async def open(
        cls,
        server_url: str,
        token: str,
        *,
        device: str = "",
        verify_tls: bool = True,
        ping_interval: float = DEFAULT_PING_INTERVAL,
        ping_timeout: float = DEFAULT_PING_TIMEOUT,
        max_size: int = DEFAULT_MAX_MESSAGE_SIZE,
    ) -> DuplexChannel:
        url = device_connect_url(server_url)
        kwargs: dict[str, Any] = {
            "additional_headers": {"Authorization": f"Bearer {token}"},
            "max_size": max_size,
            "ping_interval": None,  # keep-alive is driven by this class
            "open_timeout": _OPEN_TIMEOUT,
            "close_timeout": _CLOSE_TIMEOUT,
        }
        if url.startswith("wss://") and not verify_tls:
            ctx = ssl.create_default_context()
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
            kwargs["ssl"] = ctx
        try:
            ws = await connect(url, **kwargs)
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as exc:
            raise DuplexError(f"Cannot open {url}: {exc}") from exc
        logger.debug("[%s] %-40s", device, "websocket connected")
        return cls(ws, device=device, ping_interval=ping_interval, ping_timeout=ping_timeout)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, msg: ProtoMsg) -> None:
        if self._closed:
            raise DuplexError("Channel is closed")
        data = msg.encode()
        async with self._write_lock:
            try:
                await self._ws.send(data)
            except ConnectionClosed as exc:
                await self.close()
                raise DuplexError(f"Send failed: {exc}") from exc

    async def receive(self) -> ProtoMsg:
        """Block until the next frame arrives."""
        if self._closed:
            raise DuplexError("Channel is closed")
        try:
            data = await self._ws.recv()
        except ConnectionClosed as exc:
            await self.close()
            raise DuplexError(f"Connection closed: {exc}") from exc
        if isinstance(data, str):
            data = data.encode()
        try:
            return ProtoMsg.decode(data)
        except ProtocolError as exc:
            await self.close()
            raise DuplexError(str(exc)) from exc

    async def close(self) -> None:
        """Stop the keep-alive task and close the socket. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        task, self._keepalive = self._keepalive, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._ws.close()
        logger.debug("[%s] %-40s", self.device, "websocket disconnected")

    async def _keepalive_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.ping_interval)
            try:
                pong = await self._ws.ping()
                await asyncio.wait_for(pong, self.ping_timeout)
            except (asyncio.TimeoutError, ConnectionClosed) as exc:
                logger.warning("[%s] websocket keep-alive failed (%s), closing",
                               self.device, exc or "no pong")
                await self.close()
                return
