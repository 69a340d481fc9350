"""Main daemon orchestration - ties all components together."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from rac.config import Config
from rac.device_store import JsonDeviceStore
from rac.errors import StorageError
from rac.gateway import AuthGateway
from rac.pairing import PendingRequestWorkflow
from rac.server import ControlServer
from rac.tunnel import TunnelSupervisor, cloudflared_command

logger = logging.getLogger(__name__)


class StartupError(Exception):
    """Error during daemon startup."""

    pass


class Daemon:
    """Main daemon orchestrating all components.

    Responsibilities:
    - Load the device registry (one instance, shared by reference)
    - Build the approval workflow, auth gateway and tunnel supervisor
    - Serve the HTTP control API
    - Stop the tunnel relay and the server on shutdown
    """

    def __init__(
        self,
        config: Config,
        device_store: Optional[JsonDeviceStore] = None,
        tunnel: Optional[TunnelSupervisor] = None,
    ):
        """Initialize daemon.

        Args:
            config: Daemon configuration.
            device_store: Optional injected registry (for testing).
            tunnel: Optional injected tunnel supervisor (for testing).
        """
        self._config = config
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None

        self._device_store = device_store
        self._tunnel = tunnel
        self._gateway: Optional[AuthGateway] = None
        self._server: Optional[ControlServer] = None

    @property
    def device_store(self) -> Optional[JsonDeviceStore]:
        return self._device_store

    @property
    def tunnel(self) -> Optional[TunnelSupervisor]:
        return self._tunnel

    async def start(self) -> None:
        """Start the daemon.

        Raises:
            StartupError: If the registry cannot be loaded or the port
                cannot be bound.
        """
        logger.info("Starting daemon...")
        self._stop_event = asyncio.Event()

        self._initialize_store()
        self._initialize_components()

        assert self._server is not None
        try:
            await self._server.start(
                host=self._config.bind_address,
                port=self._config.port,
            )
        except OSError as e:
            await self._server.close()
            raise StartupError(
                f"Cannot listen on {self._config.bind_address}:{self._config.port}: {e}"
            ) from e

        self._setup_signals()

        self._running = True
        logger.info("Daemon started successfully")

    async def run_forever(self) -> None:
        """Run daemon until shutdown signal."""
        if not self._running:
            await self.start()

        assert self._stop_event is not None
        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self._shutdown()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    def get_port(self) -> int:
        """Port the control server is bound to (0 before start)."""
        return self._server.get_port() if self._server else 0

    def _initialize_store(self) -> None:
        if self._device_store is None:
            auth = self._config.auth
            self._device_store = JsonDeviceStore(
                Path(auth.devices_file).expanduser(),
                token_ttl=int(auth.token_ttl_days) * 24 * 60 * 60,
            )
        try:
            self._device_store.load()
        except StorageError as e:
            raise StartupError(str(e)) from e
        logger.info(f"Loaded {len(self._device_store)} authorized devices")

    def _initialize_components(self) -> None:
        assert self._device_store is not None

        workflow = PendingRequestWorkflow(
            self._device_store, ttl=self._config.auth.pending_request_ttl
        )
        self._gateway = AuthGateway(self._device_store, workflow)

        if self._tunnel is None:
            tunnel_config = self._config.tunnel
            self._tunnel = TunnelSupervisor(
                command=cloudflared_command(tunnel_config.binary),
                url_pattern=tunnel_config.url_pattern,
                stop_timeout=tunnel_config.stop_timeout,
            )

        self._server = ControlServer(
            gateway=self._gateway,
            tunnel=self._tunnel,
            trust_forwarded_for=self._config.auth.trust_forwarded_for,
        )

    def _setup_signals(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(
                    sig,
                    lambda: asyncio.create_task(self.stop()),
                )
            except (NotImplementedError, RuntimeError):
                # Not on the main thread, or platform without signal support
                logger.debug(f"Signal handler for {sig.name} not installed")

    async def _shutdown(self) -> None:
        """Perform graceful shutdown."""
        logger.info("Shutting down daemon...")

        if self._tunnel:
            await self._tunnel.stop()

        if self._server:
            await self._server.close()

        self._running = False
        logger.info("Daemon stopped")
