"""HTTP client the CLI uses to drive a running daemon.

The CLI authenticates like any other device: it calls local-auth from
loopback once, caches the host token on disk and re-mints it whenever the
daemon answers 401 (device revoked, secret rotated, token expired). The
host device behind a rejected token is removed after re-minting so CLI
devices do not pile up.
"""

import json
import logging
import os
import platform
from pathlib import Path
from typing import Any, Optional

import aiohttp

from rac.errors import RacError

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_FILE = "~/.config/rac/cli-token"
CLI_DEVICE_NAME = "rac CLI"
REQUEST_TIMEOUT = 10.0


class DaemonUnavailableError(RacError):
    """The daemon is not reachable on its control port."""

    pass


class DaemonRequestError(RacError):
    """The daemon answered with an error status."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


def base_url_for(port: int) -> str:
    return f"http://127.0.0.1:{port}"


class TokenCache:
    """Host token and its device id, persisted between CLI invocations (mode 0600)."""

    def __init__(self, path: Path | str = DEFAULT_TOKEN_FILE):
        self.path = Path(path).expanduser()

    def _read(self) -> dict[str, Any]:
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def load(self) -> Optional[str]:
        token = self._read().get("token")
        return token if isinstance(token, str) and token else None

    def device_id(self) -> Optional[str]:
        """Device the cached token was minted for, if known."""
        device_id = self._read().get("deviceId")
        return device_id if isinstance(device_id, str) and device_id else None

    def save(self, token: str, device_id: Optional[str] = None) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump({"token": token, "deviceId": device_id}, f)
        os.chmod(self.path, 0o600)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class DaemonClient:
    """Async client for the daemon control API.

    Usage:
        async with DaemonClient("http://127.0.0.1:5173") as client:
            data = await client.request("GET", "/api/devices")
    """

    def __init__(
        self,
        base_url: str,
        token_cache: Optional[TokenCache] = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self._base_url = base_url.rstrip("/")
        self._cache = token_cache or TokenCache()
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "DaemonClient":
        self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def request(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
        auth: bool = True,
    ) -> dict[str, Any]:
        """Call the daemon and return its JSON body.

        Authenticated calls that fail with 401 are retried once with a
        freshly minted host token.

        Raises:
            DaemonUnavailableError: If the daemon cannot be reached.
            DaemonRequestError: If the daemon answers with an error status.
        """
        if not auth:
            return await self._send(method, path, payload, token=None)

        token = self._cache.load()
        if token is None:
            token = await self._mint_token()

        try:
            return await self._send(method, path, payload, token=token)
        except DaemonRequestError as e:
            if e.status != 401:
                raise

        logger.debug("Cached CLI token rejected, minting a new one")
        stale_device_id = self._cache.device_id()
        token = await self._mint_token()
        await self._prune_device(stale_device_id, token)
        return await self._send(method, path, payload, token=token)

    async def _mint_token(self) -> str:
        data = await self._send(
            "POST",
            "/api/auth/local-auth",
            {
                "device": {
                    "name": CLI_DEVICE_NAME,
                    "platform": platform.system() or "Unknown",
                    "browser": "CLI",
                }
            },
            token=None,
        )
        token = data.get("token")
        if not isinstance(token, str) or not token:
            raise DaemonRequestError(500, "Daemon did not return a token")
        device_id = data.get("deviceId")
        self._cache.save(token, device_id if isinstance(device_id, str) else None)
        return token

    async def _prune_device(self, device_id: Optional[str], token: str) -> None:
        """Remove the host device a rejected token belonged to."""
        if device_id is None or device_id == self._cache.device_id():
            return
        try:
            await self._send("DELETE", f"/api/devices/{device_id}", None, token=token)
        except DaemonRequestError as e:
            # Already gone when it was revoked rather than rotated out
            logger.debug(f"Stale CLI device not removed: {e}")
            return
        logger.debug("Removed stale CLI device")

    async def _send(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]],
        token: Optional[str],
    ) -> dict[str, Any]:
        if self._session is None:
            raise RuntimeError("DaemonClient used outside 'async with'")

        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            async with self._session.request(
                method, self._base_url + path, json=payload, headers=headers
            ) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
                if resp.status >= 400:
                    message = data.get("error") if isinstance(data, dict) else None
                    raise DaemonRequestError(resp.status, message or f"HTTP {resp.status}")
        except aiohttp.ClientConnectionError as e:
            raise DaemonUnavailableError(f"Cannot connect to daemon at {self._base_url}") from e

        return data if isinstance(data, dict) else {}
