"""HTTP control server for the daemon.

Single aiohttp server handling all routes:
- /health - Health check
- /api/auth/* - Login, pairing and token validation
- /api/devices* - Device management (bearer token)
- /api/admin/* - Pending request approval (bearer token)
- /api/tunnel/* - Tunnel relay control (loopback only)
- /api/system/* - Local network info
"""

import functools
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from aiohttp import web

from rac.device_store import DeviceDescriptor
from rac.errors import BadRequestError, ForbiddenError, GatewayError
from rac.gateway import LOCAL_DEVICE_NAME, AuthGateway
from rac.ip_provider import (
    IpDiscoveryError,
    LocalNetworkIpProvider,
    is_loopback,
    normalize_ip,
)
from rac.tunnel import TunnelSupervisor

logger = logging.getLogger(__name__)

MAX_BODY_SIZE = 1024 * 1024  # 1MB

Handler = Callable[["ControlServer", web.Request], Awaitable[web.Response]]


def _json_errors(handler: Handler) -> Handler:
    """Map GatewayError raised by a handler to a JSON error response."""

    @functools.wraps(handler)
    async def wrapper(self: "ControlServer", request: web.Request) -> web.Response:
        try:
            return await handler(self, request)
        except GatewayError as e:
            return web.json_response({"error": str(e)}, status=e.status)

    return wrapper


def _bearer_token(request: web.Request) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer`` header."""
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:].strip() or None
    return None


async def _read_json(request: web.Request) -> dict[str, Any]:
    """Read a JSON object body. An empty body reads as ``{}``.

    Raises:
        BadRequestError: If the body is not a JSON object.
    """
    try:
        text = await request.text()
    except UnicodeDecodeError:
        raise BadRequestError("Invalid JSON")

    if not text.strip():
        return {}

    try:
        data = json.loads(text)
    except (json.JSONDecodeError, RecursionError):
        raise BadRequestError("Invalid JSON")

    if not isinstance(data, dict):
        raise BadRequestError("Expected a JSON object")
    return data


def _descriptor(body: dict[str, Any], default_name: Optional[str] = None) -> DeviceDescriptor:
    """Device descriptor from ``{"device": {...}}`` or ``{"deviceName": ...}``."""
    raw = body.get("device")
    if not isinstance(raw, dict):
        raw = {}
    if "name" not in raw and isinstance(body.get("deviceName"), str):
        raw = {**raw, "name": body["deviceName"]}
    if "name" not in raw and default_name:
        raw = {**raw, "name": default_name}
    return DeviceDescriptor.from_dict(raw)


class ControlServer:
    """HTTP boundary over the auth gateway and tunnel supervisor."""

    def __init__(
        self,
        gateway: AuthGateway,
        tunnel: TunnelSupervisor,
        trust_forwarded_for: bool = True,
        ip_provider: Optional[LocalNetworkIpProvider] = None,
    ):
        """Initialize control server.

        Args:
            gateway: Authorization facade.
            tunnel: Tunnel relay supervisor.
            trust_forwarded_for: Take the client IP from proxy headers when
                the socket peer is loopback (the tunnel relay).
            ip_provider: LAN address discovery for /api/system/info.
        """
        self.gateway = gateway
        self.tunnel = tunnel
        self.trust_forwarded_for = trust_forwarded_for
        self.ip_provider = ip_provider or LocalNetworkIpProvider()

        self.app = web.Application(client_max_size=MAX_BODY_SIZE)
        self._setup_routes()
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._port: int = 0

    def _setup_routes(self) -> None:
        """Set up all HTTP routes."""
        router = self.app.router

        router.add_get("/health", self._handle_health)

        # Login and pairing
        router.add_post("/api/auth/local-auth", self._handle_local_auth)
        router.add_post("/api/auth/verify", self._handle_verify)
        router.add_post("/api/auth/request-access", self._handle_request_access)
        router.add_get("/api/auth/check-status", self._handle_check_status)
        router.add_get("/api/auth/validate", self._handle_validate)
        router.add_post("/api/auth/logout", self._handle_logout)
        router.add_get("/api/auth/code", self._handle_get_code)
        router.add_post("/api/auth/code/rotate", self._handle_rotate_code)

        # Device management
        router.add_get("/api/devices", self._handle_list_devices)
        router.add_post("/api/devices/revoke-others", self._handle_revoke_others)
        router.add_delete("/api/devices/{device_id}", self._handle_revoke_device)
        router.add_put("/api/devices/{device_id}/rename", self._handle_rename_device)

        # Operator approval
        router.add_get("/api/admin/pending-requests", self._handle_pending_requests)
        router.add_post("/api/admin/approve", self._handle_approve)
        router.add_post("/api/admin/deny", self._handle_deny)

        # Tunnel
        router.add_post("/api/tunnel/start", self._handle_tunnel_start)
        router.add_post("/api/tunnel/stop", self._handle_tunnel_stop)
        router.add_get("/api/tunnel/status", self._handle_tunnel_status)

        # System
        router.add_get("/api/system/info", self._handle_system_info)
        router.add_get("/api/system/is-local", self._handle_is_local)

    # =========================================================================
    # Request helpers
    # =========================================================================

    def client_ip(self, request: web.Request) -> str:
        """Resolve the caller's IP.

        Proxy headers are only honoured when the socket peer is loopback,
        i.e. the request was relayed by the local tunnel process. Among them,
        CF-Connecting-IP wins, then the right-most X-Forwarded-For entry
        (the one added by the relay rather than by the client).
        """
        peer = normalize_ip(request.remote or "unknown")
        if not (self.trust_forwarded_for and is_loopback(peer)):
            return peer

        connecting = request.headers.get("CF-Connecting-IP", "").strip()
        if connecting:
            return normalize_ip(connecting)

        forwarded = request.headers.get("X-Forwarded-For", "")
        hops = [h.strip() for h in forwarded.split(",") if h.strip()]
        if hops:
            return normalize_ip(hops[-1])

        return peer

    def is_local(self, request: web.Request) -> bool:
        return is_loopback(self.client_ip(request))

    def _require_local(self, request: web.Request) -> None:
        if not self.is_local(request):
            raise ForbiddenError("Only available from this machine")

    # =========================================================================
    # Health
    # =========================================================================

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.Response(text="OK")

    # =========================================================================
    # Login and pairing
    # =========================================================================

    @_json_errors
    async def _handle_local_auth(self, request: web.Request) -> web.Response:
        """Mint a host device for a loopback caller."""
        ip = self.client_ip(request)
        body = await _read_json(request)
        grant = self.gateway.local_auth(ip, _descriptor(body, LOCAL_DEVICE_NAME))
        return web.json_response({
            "success": True,
            "token": grant.token,
            "deviceId": grant.device_id,
            "device": grant.device.to_dict(),
        })

    @_json_errors
    async def _handle_verify(self, request: web.Request) -> web.Response:
        """Mint a device for a caller presenting the pairing code."""
        body = await _read_json(request)
        if "code" not in body:
            raise BadRequestError("code is required")
        grant = self.gateway.verify_code(
            body["code"], self.client_ip(request), _descriptor(body)
        )
        return web.json_response({
            "success": True,
            "token": grant.token,
            "deviceId": grant.device_id,
        })

    @_json_errors
    async def _handle_request_access(self, request: web.Request) -> web.Response:
        """Queue a pairing attempt for operator approval."""
        body = await _read_json(request)
        if "code" not in body:
            raise BadRequestError("code is required")
        pending = self.gateway.request_access(
            body["code"], self.client_ip(request), _descriptor(body)
        )
        return web.json_response({"success": True, "requestId": pending.id})

    @_json_errors
    async def _handle_check_status(self, request: web.Request) -> web.Response:
        """Poll the status of a pending request."""
        status = self.gateway.check_status(request.query.get("requestId"))
        return web.json_response(status.to_dict())

    @_json_errors
    async def _handle_validate(self, request: web.Request) -> web.Response:
        device = self.gateway.authenticate(_bearer_token(request), self.client_ip(request))
        return web.json_response({
            "valid": True,
            "deviceId": device.id,
            "device": device.to_dict(),
        })

    @_json_errors
    async def _handle_logout(self, request: web.Request) -> web.Response:
        self.gateway.logout(_bearer_token(request), self.client_ip(request))
        return web.json_response({"success": True})

    @_json_errors
    async def _handle_get_code(self, request: web.Request) -> web.Response:
        code = self.gateway.get_code(_bearer_token(request), self.client_ip(request))
        return web.json_response({"code": code})

    @_json_errors
    async def _handle_rotate_code(self, request: web.Request) -> web.Response:
        code = self.gateway.rotate_code(_bearer_token(request), self.client_ip(request))
        return web.json_response({"success": True, "code": code})

    # =========================================================================
    # Device management
    # =========================================================================

    @_json_errors
    async def _handle_list_devices(self, request: web.Request) -> web.Response:
        devices, current_id = self.gateway.list_devices(
            _bearer_token(request), self.client_ip(request)
        )
        return web.json_response({
            "devices": [d.to_dict() for d in devices],
            "currentDeviceId": current_id,
        })

    @_json_errors
    async def _handle_revoke_device(self, request: web.Request) -> web.Response:
        self.gateway.revoke(
            _bearer_token(request),
            self.client_ip(request),
            request.match_info["device_id"],
        )
        return web.json_response({"success": True})

    @_json_errors
    async def _handle_rename_device(self, request: web.Request) -> web.Response:
        token = _bearer_token(request)
        ip = self.client_ip(request)
        # Authenticate before parsing so a bad body cannot reveal anything
        self.gateway.authenticate(token, ip)
        body = await _read_json(request)
        device = self.gateway.rename(
            token, ip, request.match_info["device_id"], body.get("name")
        )
        return web.json_response({"success": True, "device": device.to_dict()})

    @_json_errors
    async def _handle_revoke_others(self, request: web.Request) -> web.Response:
        count = self.gateway.revoke_all_except(
            _bearer_token(request), self.client_ip(request)
        )
        return web.json_response({"success": True, "revokedCount": count})

    # =========================================================================
    # Operator approval
    # =========================================================================

    @_json_errors
    async def _handle_pending_requests(self, request: web.Request) -> web.Response:
        requests = self.gateway.list_pending(
            _bearer_token(request), self.client_ip(request)
        )
        return web.json_response({
            "requests": [r.to_dict(include_token=False) for r in requests],
        })

    @_json_errors
    async def _handle_approve(self, request: web.Request) -> web.Response:
        token = _bearer_token(request)
        ip = self.client_ip(request)
        self.gateway.authenticate(token, ip)
        body = await _read_json(request)
        device = self.gateway.approve(token, ip, body.get("requestId"))
        return web.json_response({"success": True, "device": device.to_dict()})

    @_json_errors
    async def _handle_deny(self, request: web.Request) -> web.Response:
        token = _bearer_token(request)
        ip = self.client_ip(request)
        self.gateway.authenticate(token, ip)
        body = await _read_json(request)
        self.gateway.deny(token, ip, body.get("requestId"))
        return web.json_response({"success": True})

    # =========================================================================
    # Tunnel
    # =========================================================================

    @_json_errors
    async def _handle_tunnel_start(self, request: web.Request) -> web.Response:
        """Start the relay towards this server's port (or ``{"port": n}``)."""
        self._require_local(request)
        body = await _read_json(request)
        port = body.get("port", self.get_port() or request.url.port)
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise BadRequestError("port must be an integer between 1 and 65535")
        state = await self.tunnel.start(port)
        return web.json_response(state.to_dict())

    @_json_errors
    async def _handle_tunnel_stop(self, request: web.Request) -> web.Response:
        self._require_local(request)
        await self.tunnel.stop()
        return web.json_response({"success": True})

    @_json_errors
    async def _handle_tunnel_status(self, request: web.Request) -> web.Response:
        self._require_local(request)
        return web.json_response(self.tunnel.get_info().to_dict())

    # =========================================================================
    # System
    # =========================================================================

    async def _handle_system_info(self, request: web.Request) -> web.Response:
        try:
            local_ip = await self.ip_provider.get_ip()
        except IpDiscoveryError as e:
            logger.debug(f"Local IP discovery failed: {e}")
            local_ip = "localhost"
        return web.json_response({"localIp": local_ip, "port": self.get_port()})

    async def _handle_is_local(self, request: web.Request) -> web.Response:
        return web.json_response({"isLocal": self.is_local(request)})

    # =========================================================================
    # Server lifecycle
    # =========================================================================

    async def start(self, host: str, port: int) -> web.AppRunner:
        """Start the server.

        Args:
            host: Host to bind to.
            port: Port to bind to (0 for random).

        Returns:
            App runner for cleanup.
        """
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()

        # Get actual port
        if self._site._server and self._site._server.sockets:
            self._port = self._site._server.sockets[0].getsockname()[1]
        else:
            self._port = port

        logger.info(f"Control server started on {host}:{self._port}")
        return self._runner

    def get_port(self) -> int:
        """Get the actual bound port."""
        return self._port

    async def close(self) -> None:
        """Stop the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
        logger.info("Control server closed")
