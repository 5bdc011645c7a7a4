"""Tests for the device API client."""

from __future__ import annotations

import base64
import json

import httpx
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from stress_client.api import (
    SIGNATURE_HEADER,
    APIConnectionError,
    APIError,
    APIProtocolError,
    APIStatusError,
    Deployment,
    DeviceAPI,
    UnauthorizedError,
)


def _api(handler) -> DeviceAPI:
    return DeviceAPI("https://backend.test/", device="ff:00:00:00:00:01",
                     transport=httpx.MockTransport(handler))


class TestErrors:
    def test_hierarchy(self):
        for cls in (APIConnectionError, UnauthorizedError, APIStatusError, APIProtocolError):
            assert issubclass(cls, APIError)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        async with _api(handler) as api:
            with pytest.raises(APIConnectionError):
                await api.submit_inventory("tok", [])

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        async with _api(lambda request: httpx.Response(401)) as api:
            with pytest.raises(UnauthorizedError):
                await api.submit_inventory("tok", [])

    @pytest.mark.asyncio
    async def test_unexpected_status(self):
        async with _api(lambda request: httpx.Response(500)) as api:
            with pytest.raises(APIStatusError) as info:
                await api.report_status("tok", "d1", "installing")
        assert info.value.status_code == 500


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_signed_request(self, key_material):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(200, text="the-token\n")

        async with _api(handler) as api:
            token = await api.authenticate({"mac": "ff:00:00:00:00:01"}, key_material, "tenant-1")

        assert token == "the-token"
        request = captured["request"]
        assert request.url.path == "/api/devices/v1/authentication/auth_requests"
        body = json.loads(request.content)
        assert json.loads(body["id_data"]) == {"mac": "ff:00:00:00:00:01"}
        assert body["tenant_token"] == "tenant-1"
        assert body["pubkey"] == key_material.public_pem

        signature = base64.b64decode(request.headers[SIGNATURE_HEADER])
        key_material.private_key.public_key().verify(
            signature, request.content, padding.PKCS1v15(), hashes.SHA256(),
        )

    @pytest.mark.asyncio
    async def test_rejected(self, key_material):
        async with _api(lambda request: httpx.Response(401)) as api:
            with pytest.raises(UnauthorizedError):
                await api.authenticate({"mac": "x"}, key_material)

    @pytest.mark.asyncio
    async def test_empty_token(self, key_material):
        async with _api(lambda request: httpx.Response(200, text="")) as api:
            with pytest.raises(APIProtocolError):
                await api.authenticate({"mac": "x"}, key_material)


class TestDeployments:
    @pytest.mark.asyncio
    async def test_nothing_scheduled(self):
        async with _api(lambda request: httpx.Response(204)) as api:
            assert await api.next_deployment("tok", "qemu", "v1") is None

    @pytest.mark.asyncio
    async def test_request_body_and_bearer(self):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(204)

        async with _api(handler) as api:
            await api.next_deployment("tok", "qemu", "v1", "abc123")

        request = captured["request"]
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer tok"
        assert json.loads(request.content) == {
            "device_type": "qemu",
            "artifact_name": "v1",
            "rootfs_checksum": "abc123",
        }

    @pytest.mark.asyncio
    async def test_scheduled(self):
        payload = {
            "id": "dep-1",
            "artifact": {"artifact_name": "v2", "source": {"uri": "https://s3/v2"}},
        }
        async with _api(lambda request: httpx.Response(200, json=payload)) as api:
            deployment = await api.next_deployment("tok", "qemu", "v1")
        assert deployment == Deployment(id="dep-1", artifact_name="v2", source_uri="https://s3/v2")

    @pytest.mark.asyncio
    async def test_undecodable_payload(self):
        async with _api(lambda request: httpx.Response(200, content=b"<html>")) as api:
            with pytest.raises(APIProtocolError):
                await api.next_deployment("tok", "qemu", "v1")

    def test_payload_without_id(self):
        with pytest.raises(APIProtocolError):
            Deployment.from_payload({"artifact": {"name": "v2"}})

    def test_payload_without_artifact(self):
        deployment = Deployment.from_payload({"id": "d"})
        assert deployment.artifact_name is None
        assert deployment.source_uri is None

    @pytest.mark.asyncio
    async def test_status_with_substate(self):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(204)

        async with _api(handler) as api:
            await api.report_status("tok", "dep-1", "downloading", "running predownload script")

        request = captured["request"]
        assert request.method == "PUT"
        assert request.url.path == "/api/devices/v1/deployments/device/deployments/dep-1/status"
        assert json.loads(request.content) == {
            "status": "downloading",
            "substate": "running predownload script",
        }

    @pytest.mark.asyncio
    async def test_upload_log(self):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(204)

        async with _api(handler) as api:
            await api.upload_log("tok", "dep-1", "boom")

        request = captured["request"]
        assert request.url.path.endswith("/deployments/dep-1/log")
        message = json.loads(request.content)["messages"][0]
        assert message["message"] == "boom"
        assert message["level"] == "debug"


class TestDownload:
    @pytest.mark.asyncio
    async def test_counts_and_discards(self):
        async with _api(lambda request: httpx.Response(200, content=b"a" * 10_000)) as api:
            assert await api.download("https://s3.test/artifact") == 10_000

    @pytest.mark.asyncio
    async def test_missing_artifact(self):
        async with _api(lambda request: httpx.Response(404)) as api:
            with pytest.raises(APIStatusError):
                await api.download("https://s3.test/artifact")

    @pytest.mark.asyncio
    async def test_corrupt_encoding(self):
        def handler(request):
            return httpx.Response(200, content=b"not gzip at all",
                                  headers={"Content-Encoding": "gzip"})

        async with _api(handler) as api:
            with pytest.raises(APIProtocolError):
                await api.download("https://s3.test/artifact")

    @pytest.mark.asyncio
    async def test_invalid_url(self):
        async with _api(lambda request: httpx.Response(200)) as api:
            with pytest.raises(APIProtocolError):
                await api.download("http://[::1")


class TestUndecodableResponses:
    @pytest.mark.asyncio
    async def test_auth_response_with_corrupt_encoding(self, key_material):
        def handler(request):
            return httpx.Response(200, content=b"token",
                                  headers={"Content-Encoding": "gzip"})

        async with _api(handler) as api:
            with pytest.raises(APIProtocolError):
                await api.authenticate({"mac": "x"}, key_material)
