"""Device API client for the fleet-management backend.

Uses httpx for async HTTP.  Every call that carries a bearer token raises
:class:`UnauthorizedError` on a 401 so the device session can re-authenticate;
all other failures surface as :class:`APIError` subclasses.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from .keys import KeyMaterial

logger = logging.getLogger(__name__)

URL_AUTH_REQUEST = "/api/devices/v1/authentication/auth_requests"
URL_INVENTORY = "/api/devices/v1/inventory/device/attributes"
URL_DEPLOYMENTS_NEXT = "/api/devices/v1/deployments/device/deployments/next"
URL_DEPLOYMENT_STATUS = "/api/devices/v1/deployments/device/deployments/{id}/status"
URL_DEPLOYMENT_LOG = "/api/devices/v1/deployments/device/deployments/{id}/log"

SIGNATURE_HEADER = "X-MEN-Signature"


class APIError(Exception):
    """Base error for device API failures."""


class APIConnectionError(APIError):
    """Raised when the backend is network-unreachable or the call timed out."""


class UnauthorizedError(APIError):
    """Raised when the backend rejects the credential (HTTP 401)."""


class APIStatusError(APIError):
    """Raised on an unexpected HTTP status."""

    def __init__(self, action: str, status_code: int) -> None:
        super().__init__(f"{action} returned HTTP {status_code}")
        self.status_code = status_code


class APIProtocolError(APIError):
    """Raised when the backend returns a payload that cannot be decoded."""


@dataclass(frozen=True)
class Deployment:
    """A deployment scheduled for this device."""

    id: str
    artifact_name: Optional[str] = None
    source_uri: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> Deployment:
        if not isinstance(payload, dict) or not payload.get("id"):
            raise APIProtocolError(f"Deployment payload without id: {payload!r}")
        artifact = payload.get("artifact") or {}
        if not isinstance(artifact, dict):
            raise APIProtocolError(f"Malformed artifact in deployment: {artifact!r}")
        source = artifact.get("source") or {}
        return cls(
            id=str(payload["id"]),
            artifact_name=artifact.get("name") or artifact.get("artifact_name"),
            source_uri=source.get("uri") if isinstance(source, dict) else None,
        )


class DeviceAPI:
    """Async client for the device-facing backend API of one simulated device.

    A single :class:`httpx.AsyncClient` is reused across calls.  TLS
    verification is configured on this client only — nothing process-wide.
    """

    def __init__(
        self,
        server_url: str,
        *,
        device: str = "",
        timeout: float = 30.0,
        verify_tls: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = server_url.rstrip("/")
        self.device = device
        self._client = httpx.AsyncClient(
            timeout=timeout,
            verify=verify_tls,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> DeviceAPI:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def authenticate(
        self,
        identity_data: dict[str, str],
        keys: KeyMaterial,
        tenant_token: str = "",
    ) -> str:
        """Submit a signed auth request and return the bearer token."""
        body = json.dumps({
            "id_data": json.dumps(identity_data, sort_keys=True, separators=(",", ":")),
            "pubkey": keys.public_pem,
            "tenant_token": tenant_token,
        }, separators=(",", ":")).encode()
        response = await self._request(
            "authentication",
            "POST",
            URL_AUTH_REQUEST,
            content=body,
            headers={
                "Content-Type": "application/json",
                SIGNATURE_HEADER: keys.sign(body),
            },
        )
        if response.status_code != 200:
            raise APIStatusError("authentication", response.status_code)
        token = response.text.strip()
        if not token:
            raise APIProtocolError("Authentication returned an empty token")
        return token

    async def submit_inventory(self, token: str, attributes: list[dict]) -> None:
        response = await self._request(
            "send-inventory", "PUT", URL_INVENTORY, token=token, json_body=attributes,
        )
        if not response.is_success:
            raise APIStatusError("send-inventory", response.status_code)

    async def next_deployment(
        self,
        token: str,
        device_type: str,
        artifact_name: str,
        rootfs_checksum: str = "",
    ) -> Deployment | None:
        """Ask for the next deployment; ``None`` when nothing is scheduled."""
        response = await self._request(
            "update-check",
            "POST",
            URL_DEPLOYMENTS_NEXT,
            token=token,
            json_body={
                "device_type": device_type,
                "artifact_name": artifact_name,
                "rootfs_checksum": rootfs_checksum,
            },
        )
        if response.status_code != 200:
            if response.status_code != 204:
                logger.debug("[%s] update-check: no deployment (HTTP %d)",
                             self.device, response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError as exc:
            raise APIProtocolError(f"Undecodable deployment payload: {exc}") from exc
        return Deployment.from_payload(payload)

    async def report_status(
        self,
        token: str,
        deployment_id: str,
        status: str,
        substate: str | None = None,
    ) -> None:
        body: dict[str, str] = {"status": status}
        if substate:
            body["substate"] = substate
        action = f"deployment-status: {status}"
        response = await self._request(
            action,
            "PUT",
            URL_DEPLOYMENT_STATUS.format(id=deployment_id),
            token=token,
            json_body=body,
        )
        if not response.is_success:
            raise APIStatusError(action, response.status_code)

    async def upload_log(self, token: str, deployment_id: str, message: str) -> None:
        """Upload a single-line deployment log (sent ahead of a failure report)."""
        body = {"messages": [{
            "level": "debug",
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }]}
        response = await self._request(
            "deployment-log",
            "PUT",
            URL_DEPLOYMENT_LOG.format(id=deployment_id),
            token=token,
            json_body=body,
        )
        if not response.is_success:
            raise APIStatusError("deployment-log", response.status_code)

    async def download(self, url: str) -> int:
        """Fetch *url* and discard the body; return the number of bytes read."""
        total = 0
        start = time.monotonic()
        try:
            async with self._client.stream("GET", url) as response:
                if not response.is_success:
                    raise APIStatusError("download", response.status_code)
                async for chunk in response.aiter_bytes():
                    total += len(chunk)
        except httpx.InvalidURL as exc:
            raise APIProtocolError(f"Invalid artifact URL {url!r}: {exc}") from exc
        except httpx.DecodingError as exc:
            raise APIProtocolError(f"Undecodable artifact from {url}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise APIConnectionError(f"Download of {url} failed: {exc}") from exc
        logger.debug("[%s] %-40s %d bytes (%6d ms)", self.device, "download",
                     total, (time.monotonic() - start) * 1000)
        return total

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    async def _request(
        self,
        action: str,
        method: str,
        path: str,
        *,
        token: str | None = None,
        json_body: Any = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        headers = dict(headers or {})
        if token is not None:
            headers["Authorization"] = f"Bearer {token}"
        start = time.monotonic()
        try:
            response = await self._client.request(
                method, url, json=json_body, content=content, headers=headers,
            )
        except httpx.DecodingError as exc:
            raise APIProtocolError(f"{action}: undecodable response from {url}: {exc}") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise APIConnectionError(f"{action}: cannot reach {url}: {exc}") from exc
        logger.debug("[%s] %-40s %d (%6d ms)", self.device, action,
                     response.status_code, (time.monotonic() - start) * 1000)
        if response.status_code == 401:
            raise UnauthorizedError(f"{action} rejected the credential")
        return response
