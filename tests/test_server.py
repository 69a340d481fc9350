"""Tests for the HTTP control server."""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from rac.ip_provider import IpDiscoveryError
from rac.server import ControlServer
from rac.tunnel import TunnelState, TunnelStatus, TunnelSupervisor

REMOTE_IP = "203.0.113.9"
REMOTE = {"X-Forwarded-For": REMOTE_IP}


@pytest.fixture
def tunnel():
    mock = MagicMock(spec=TunnelSupervisor)
    mock.start = AsyncMock(
        return_value=TunnelState(status=TunnelStatus.STARTING, start_time=1000)
    )
    mock.stop = AsyncMock()
    mock.get_info.return_value = TunnelState(
        url="https://abc.trycloudflare.com",
        status=TunnelStatus.RUNNING,
        start_time=1000,
    )
    return mock


@pytest.fixture
def ip_provider():
    mock = MagicMock()
    mock.get_ip = AsyncMock(return_value="192.168.1.20")
    return mock


@pytest.fixture
def server(gateway, tunnel, ip_provider):
    return ControlServer(gateway, tunnel, ip_provider=ip_provider)


@pytest_asyncio.fixture
async def client(server):
    async with TestClient(TestServer(server.app)) as c:
        yield c


async def _host_token(client) -> str:
    resp = await client.post("/api/auth/local-auth", json={"deviceName": "CLI"})
    assert resp.status == 200
    return (await resp.json())["token"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.text() == "OK"


class TestLocalAuth:
    @pytest.mark.asyncio
    async def test_loopback_gets_token(self, client, store):
        resp = await client.post(
            "/api/auth/local-auth",
            json={"device": {"name": "Laptop", "platform": "macOS"}},
        )

        assert resp.status == 200
        data = await resp.json()
        assert data["success"] is True
        assert data["device"]["isHost"] is True
        assert data["device"]["name"] == "Laptop"
        assert store.verify_token(data["token"]).subject == data["deviceId"]

    @pytest.mark.asyncio
    async def test_empty_body_uses_default_name(self, client):
        resp = await client.post("/api/auth/local-auth")

        assert resp.status == 200
        assert (await resp.json())["device"]["name"] == "Local Machine"

    @pytest.mark.asyncio
    async def test_forwarded_remote_caller_forbidden(self, client):
        resp = await client.post("/api/auth/local-auth", headers=REMOTE)

        assert resp.status == 403
        assert "error" in await resp.json()

    @pytest.mark.asyncio
    async def test_cf_connecting_ip_wins(self, client):
        resp = await client.post(
            "/api/auth/local-auth",
            headers={"CF-Connecting-IP": REMOTE_IP, "X-Forwarded-For": "127.0.0.1"},
        )
        assert resp.status == 403

    @pytest.mark.asyncio
    async def test_rightmost_forwarded_entry_used(self, client):
        # A client-supplied "127.0.0.1" in front does not make it local
        resp = await client.post(
            "/api/auth/local-auth",
            headers={"X-Forwarded-For": f"127.0.0.1, {REMOTE_IP}"},
        )
        assert resp.status == 403

    @pytest.mark.asyncio
    async def test_untrusted_forwarded_for_ignored(self, gateway, tunnel, ip_provider):
        server = ControlServer(
            gateway, tunnel, trust_forwarded_for=False, ip_provider=ip_provider
        )
        async with TestClient(TestServer(server.app)) as client:
            resp = await client.post("/api/auth/local-auth", headers=REMOTE)
        assert resp.status == 200


class TestVerify:
    @pytest.mark.asyncio
    async def test_correct_code_then_validate(self, client, store):
        resp = await client.post(
            "/api/auth/verify",
            json={"code": store.get_access_code(), "device": {"name": "Phone"}},
        )

        assert resp.status == 200
        data = await resp.json()
        assert data["success"] is True

        resp = await client.get("/api/auth/validate", headers=_bearer(data["token"]))
        assert resp.status == 200
        validated = await resp.json()
        assert validated["valid"] is True
        assert validated["deviceId"] == data["deviceId"]
        assert validated["device"]["name"] == "Phone"

    @pytest.mark.asyncio
    async def test_wrong_code_is_401(self, client, store):
        code = "000000" if store.get_access_code() != "000000" else "111111"

        resp = await client.post("/api/auth/verify", json={"code": code})

        assert resp.status == 401
        assert (await resp.json())["error"] == "Invalid code"
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_missing_code_is_400(self, client):
        resp = await client.post("/api/auth/verify", json={})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_invalid_json_is_400(self, client):
        resp = await client.post(
            "/api/auth/verify",
            data="{nope",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_undecodable_body_is_400(self, client):
        resp = await client.post(
            "/api/auth/verify",
            data=b'{"code":"\xff\xfe"}',
            headers={"Content-Type": "application/json; charset=utf-8"},
        )
        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid JSON"

    @pytest.mark.asyncio
    async def test_deeply_nested_body_is_400(self, client):
        resp = await client.post(
            "/api/auth/verify",
            data="[" * 100000 + "]" * 100000,
            headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_non_object_body_is_400(self, client):
        resp = await client.post("/api/auth/verify", json=["code"])
        assert resp.status == 400


class TestValidate:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"Authorization": "Bearer"},
            {"Authorization": "Basic abc"},
            {"Authorization": "Bearer garbage"},
        ],
    )
    async def test_invalid_credentials(self, client, headers):
        resp = await client.get("/api/auth/validate", headers=headers)

        assert resp.status == 401
        assert (await resp.json())["error"] == "Unauthorized"

    @pytest.mark.asyncio
    async def test_logout_then_validate(self, client):
        token = await _host_token(client)

        resp = await client.post("/api/auth/logout", headers=_bearer(token))
        assert resp.status == 200

        resp = await client.get("/api/auth/validate", headers=_bearer(token))
        assert resp.status == 401


class TestRequestAccessFlow:
    @pytest.mark.asyncio
    async def test_remote_request_approved_by_host(self, client, store):
        host = await _host_token(client)

        resp = await client.post(
            "/api/auth/request-access",
            json={"code": store.get_access_code(), "device": {"name": "Tablet"}},
            headers=REMOTE,
        )
        assert resp.status == 200
        request_id = (await resp.json())["requestId"]

        resp = await client.get(f"/api/auth/check-status?requestId={request_id}")
        assert await resp.json() == {"status": "pending"}

        resp = await client.get("/api/admin/pending-requests", headers=_bearer(host))
        pending = (await resp.json())["requests"]
        assert [r["id"] for r in pending] == [request_id]
        assert pending[0]["ip"] == REMOTE_IP
        assert pending[0]["device"]["name"] == "Tablet"

        resp = await client.post(
            "/api/admin/approve", json={"requestId": request_id}, headers=_bearer(host)
        )
        assert resp.status == 200
        device = (await resp.json())["device"]
        assert device["name"] == "Tablet"
        assert device["ip"] == REMOTE_IP

        resp = await client.get(f"/api/auth/check-status?requestId={request_id}")
        status = await resp.json()
        assert status["status"] == "approved"
        assert status["deviceId"] == device["id"]

        resp = await client.get(
            "/api/auth/validate", headers={**_bearer(status["token"]), **REMOTE}
        )
        assert resp.status == 200

    @pytest.mark.asyncio
    async def test_pending_list_hides_tokens(self, client, store):
        host = await _host_token(client)
        await client.post(
            "/api/auth/request-access",
            json={"code": store.get_access_code()},
            headers=REMOTE,
        )

        resp = await client.get("/api/admin/pending-requests", headers=_bearer(host))

        assert all("token" not in r for r in (await resp.json())["requests"])

    @pytest.mark.asyncio
    async def test_deny(self, client, store):
        host = await _host_token(client)
        resp = await client.post(
            "/api/auth/request-access",
            json={"code": store.get_access_code()},
            headers=REMOTE,
        )
        request_id = (await resp.json())["requestId"]

        resp = await client.post(
            "/api/admin/deny", json={"requestId": request_id}, headers=_bearer(host)
        )
        assert resp.status == 200

        resp = await client.get(f"/api/auth/check-status?requestId={request_id}")
        assert await resp.json() == {"status": "denied"}

    @pytest.mark.asyncio
    async def test_approve_twice_is_404(self, client, store):
        host = await _host_token(client)
        resp = await client.post(
            "/api/auth/request-access", json={"code": store.get_access_code()}
        )
        request_id = (await resp.json())["requestId"]
        await client.post(
            "/api/admin/approve", json={"requestId": request_id}, headers=_bearer(host)
        )

        resp = await client.post(
            "/api/admin/approve", json={"requestId": request_id}, headers=_bearer(host)
        )

        assert resp.status == 404
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_approve_without_token(self, client):
        resp = await client.post("/api/admin/approve", json={"requestId": "x"})
        assert resp.status == 401

    @pytest.mark.asyncio
    async def test_check_status_unknown(self, client):
        resp = await client.get("/api/auth/check-status")
        assert await resp.json() == {"status": "not_found"}


class TestCode:
    @pytest.mark.asyncio
    async def test_get_code(self, client, store):
        token = await _host_token(client)

        resp = await client.get("/api/auth/code", headers=_bearer(token))

        assert await resp.json() == {"code": store.get_access_code()}

    @pytest.mark.asyncio
    async def test_code_requires_token(self, client):
        resp = await client.get("/api/auth/code")
        assert resp.status == 401

    @pytest.mark.asyncio
    async def test_rotate_invalidates_tokens(self, client, store):
        token = await _host_token(client)

        resp = await client.post("/api/auth/code/rotate", headers=_bearer(token))

        assert resp.status == 200
        data = await resp.json()
        assert data["code"] == store.get_access_code()
        resp = await client.get("/api/auth/validate", headers=_bearer(token))
        assert resp.status == 401


class TestDevices:
    @pytest.mark.asyncio
    async def test_list_devices(self, client):
        token = await _host_token(client)

        resp = await client.get("/api/devices", headers=_bearer(token))

        data = await resp.json()
        assert len(data["devices"]) == 1
        assert data["currentDeviceId"] == data["devices"][0]["id"]

    @pytest.mark.asyncio
    async def test_revoke_self_is_409(self, client):
        token = await _host_token(client)
        resp = await client.get("/api/devices", headers=_bearer(token))
        own_id = (await resp.json())["currentDeviceId"]

        resp = await client.delete(f"/api/devices/{own_id}", headers=_bearer(token))

        assert resp.status == 409

    @pytest.mark.asyncio
    async def test_revoke_other_and_unknown(self, client):
        token = await _host_token(client)
        other = await _host_token(client)
        resp = await client.get("/api/auth/validate", headers=_bearer(other))
        other_id = (await resp.json())["deviceId"]

        resp = await client.delete(f"/api/devices/{other_id}", headers=_bearer(token))
        assert resp.status == 200

        resp = await client.delete(f"/api/devices/{other_id}", headers=_bearer(token))
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_rename(self, client):
        token = await _host_token(client)
        resp = await client.get("/api/auth/validate", headers=_bearer(token))
        device_id = (await resp.json())["deviceId"]

        resp = await client.put(
            f"/api/devices/{device_id}/rename",
            json={"name": "Workstation"},
            headers=_bearer(token),
        )

        assert resp.status == 200
        assert (await resp.json())["device"]["name"] == "Workstation"

    @pytest.mark.asyncio
    async def test_rename_empty_is_400(self, client):
        token = await _host_token(client)
        resp = await client.get("/api/auth/validate", headers=_bearer(token))
        device_id = (await resp.json())["deviceId"]

        resp = await client.put(
            f"/api/devices/{device_id}/rename", json={"name": ""}, headers=_bearer(token)
        )

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_rename_without_token_is_401_even_with_bad_body(self, client):
        resp = await client.put("/api/devices/x/rename", data="{bad")
        assert resp.status == 401

    @pytest.mark.asyncio
    async def test_revoke_others(self, client):
        token = await _host_token(client)
        await _host_token(client)
        await _host_token(client)

        resp = await client.post("/api/devices/revoke-others", headers=_bearer(token))

        assert await resp.json() == {"success": True, "revokedCount": 2}


class TestTunnel:
    @pytest.mark.asyncio
    async def test_start_defaults_to_server_port(self, client, tunnel):
        resp = await client.post("/api/tunnel/start")

        assert resp.status == 200
        assert await resp.json() == {"url": "", "status": "starting", "startTime": 1000}
        tunnel.start.assert_awaited_once_with(client.server.port)

    @pytest.mark.asyncio
    async def test_start_with_explicit_port(self, client, tunnel):
        resp = await client.post("/api/tunnel/start", json={"port": 3000})

        assert resp.status == 200
        tunnel.start.assert_awaited_once_with(3000)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("port", [0, 70000, "80", True])
    async def test_start_with_invalid_port(self, client, tunnel, port):
        resp = await client.post("/api/tunnel/start", json={"port": port})

        assert resp.status == 400
        tunnel.start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_status(self, client):
        resp = await client.get("/api/tunnel/status")

        assert await resp.json() == {
            "url": "https://abc.trycloudflare.com",
            "status": "running",
            "startTime": 1000,
        }

    @pytest.mark.asyncio
    async def test_stop(self, client, tunnel):
        resp = await client.post("/api/tunnel/stop")

        assert await resp.json() == {"success": True}
        tunnel.stop.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method,path",
        [
            ("POST", "/api/tunnel/start"),
            ("POST", "/api/tunnel/stop"),
            ("GET", "/api/tunnel/status"),
        ],
    )
    async def test_remote_callers_forbidden(self, client, tunnel, method, path):
        resp = await client.request(method, path, headers=REMOTE)

        assert resp.status == 403
        tunnel.start.assert_not_awaited()
        tunnel.stop.assert_not_awaited()


class TestSystem:
    @pytest.mark.asyncio
    async def test_info(self, client):
        resp = await client.get("/api/system/info")

        data = await resp.json()
        assert data["localIp"] == "192.168.1.20"
        assert "port" in data

    @pytest.mark.asyncio
    async def test_info_falls_back_to_localhost(self, client, ip_provider):
        ip_provider.get_ip.side_effect = IpDiscoveryError("no network")

        resp = await client.get("/api/system/info")

        assert (await resp.json())["localIp"] == "localhost"

    @pytest.mark.asyncio
    async def test_is_local(self, client):
        resp = await client.get("/api/system/is-local")
        assert await resp.json() == {"isLocal": True}

        resp = await client.get("/api/system/is-local", headers=REMOTE)
        assert await resp.json() == {"isLocal": False}
