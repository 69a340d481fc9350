"""Supervisor for the public tunnel relay process.

Runs ``cloudflared tunnel --url http://localhost:<port>`` and discovers the
public URL by scanning the relay's merged stdout/stderr, since the relay
offers no structured status channel. The scan is isolated in
``TunnelSupervisor._scan_line`` and driven by a configurable pattern.

State machine:

    stopped --start()--> starting --(URL seen)--> running
    any --process exit--> stopped
    any --spawn/read error--> error
    any --stop()--> stopped

Faults never propagate to callers; they poll ``get_info()`` instead.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from rac.config import DEFAULT_URL_PATTERN

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
MAX_LINE_LENGTH = 16384


class TunnelStatus(Enum):
    """Tunnel lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


@dataclass(frozen=True)
class TunnelState:
    """Snapshot of the tunnel as last observed.

    Attributes:
        url: Public URL, empty until the relay reports it.
        status: Lifecycle state.
        start_time: Epoch milliseconds when start() spawned the relay.
        error: Human-readable failure message in the error state.
    """

    url: str = ""
    status: TunnelStatus = TunnelStatus.STOPPED
    start_time: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"url": self.url, "status": self.status.value}
        if self.start_time is not None:
            d["startTime"] = self.start_time
        if self.error is not None:
            d["error"] = self.error
        return d


def cloudflared_command(binary: str = "cloudflared") -> Callable[[int], list[str]]:
    """Command builder for a cloudflared quick tunnel."""

    def build(local_port: int) -> list[str]:
        return [binary, "tunnel", "--url", f"http://localhost:{local_port}"]

    return build


class TunnelSupervisor:
    """Owns at most one relay subprocess and tracks its public URL."""

    def __init__(
        self,
        command: Optional[Callable[[int], Sequence[str]]] = None,
        url_pattern: str = DEFAULT_URL_PATTERN,
        stop_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize supervisor.

        Args:
            command: Builds the relay argv for a local port. Defaults to
                cloudflared.
            url_pattern: Regex matching the relay's public URL.
            stop_timeout: Seconds to wait after SIGTERM before SIGKILL.
            clock: Wall clock returning Unix seconds.
        """
        self._command = command or cloudflared_command()
        self._url_re = re.compile(url_pattern)
        self._stop_timeout = stop_timeout
        self._clock = clock

        self._state = TunnelState()
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        # Serializes start() and stop() across the spawn await
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        """Whether a relay process is currently owned."""
        return self._process is not None

    def get_info(self) -> TunnelState:
        """Current cached state. No I/O."""
        return self._state

    async def start(self, local_port: int) -> TunnelState:
        """Spawn the relay for ``local_port``.

        Returns once the spawn was attempted; the URL shows up later via
        get_info(). A no-op returning the current state if a relay is
        already owned. Concurrent calls spawn at most one relay.
        """
        async with self._lock:
            return await self._start(local_port)

    async def stop(self) -> None:
        """Terminate the relay (if any) and reset to stopped.

        A stop() issued while start() is spawning waits for the spawn and
        then terminates that process.
        """
        async with self._lock:
            await self._stop()

    async def _start(self, local_port: int) -> TunnelState:
        if self._process is not None:
            return self._state

        argv = list(self._command(local_port))
        self._state = TunnelState(
            status=TunnelStatus.STARTING,
            start_time=int(self._clock() * 1000),
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to start tunnel relay {argv[0]}: {e}")
            self._state = TunnelState(status=TunnelStatus.ERROR, error=str(e))
            return self._state

        self._process = process
        self._reader_task = asyncio.create_task(self._watch(process))
        logger.info(f"Tunnel relay started (pid {process.pid}) for port {local_port}")
        return self._state

    async def _stop(self) -> None:
        process, task = self._process, self._reader_task
        self._process = None
        self._reader_task = None
        self._state = TunnelState()

        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if process is None or process.returncode is not None:
            return

        try:
            process.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("Tunnel relay ignored SIGTERM, killing")
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

        logger.info("Tunnel relay stopped")

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        """Scan relay output until EOF, then record the exit."""
        try:
            await self._read_output(process)
            returncode = await process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Tunnel relay monitoring failed: {e}")
            if self._process is process:
                self._process = None
                self._reader_task = None
                self._state = TunnelState(status=TunnelStatus.ERROR, error=str(e))
            return

        if self._process is process:
            logger.info(f"Tunnel relay exited with code {returncode}")
            self._process = None
            self._reader_task = None
            self._state = TunnelState()

    async def _read_output(self, process: asyncio.subprocess.Process) -> None:
        stream = process.stdout
        if stream is None:
            return

        buffer = ""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            buffer += chunk.decode("utf-8", errors="replace")
            *lines, buffer = buffer.split("\n")
            for line in lines:
                self._scan_line(line)
            if len(buffer) > MAX_LINE_LENGTH:
                self._scan_line(buffer)
                buffer = ""

        if buffer:
            self._scan_line(buffer)

    def _scan_line(self, line: str) -> None:
        """Look for the public URL in one line of relay output."""
        line = line.rstrip("\r")
        if line:
            logger.debug(f"[relay] {line}")

        if self._state.status is not TunnelStatus.STARTING:
            return

        match = self._url_re.search(line)
        if match:
            self._state = TunnelState(
                url=match.group(0),
                status=TunnelStatus.RUNNING,
                start_time=self._state.start_time,
            )
            logger.info(f"Tunnel URL ready: {self._state.url}")
