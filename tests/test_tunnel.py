"""Tests for the tunnel relay supervisor.

The relay is simulated with small ``python -c`` scripts so the real
subprocess, pipe and signal handling is exercised.
"""

import asyncio
import sys

import pytest

from rac.tunnel import TunnelState, TunnelStatus, TunnelSupervisor, cloudflared_command

URL = "https://quiet-river-1234.trycloudflare.com"


def _script(body: str):
    """Command builder running ``body`` under the current interpreter."""

    def build(port: int) -> list[str]:
        return [sys.executable, "-c", body]

    return build


ANNOUNCE_AND_WAIT = _script(
    "import time\n"
    "print('INF Requesting new quick Tunnel on trycloudflare.com...', flush=True)\n"
    "print('INF |  " + URL + "  |', flush=True)\n"
    "time.sleep(30)\n"
)


@pytest.fixture
def spawned(monkeypatch):
    """Records every relay process the supervisor spawns."""
    processes = []
    real_exec = asyncio.create_subprocess_exec

    async def recording_exec(*args, **kwargs):
        process = await real_exec(*args, **kwargs)
        processes.append(process)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", recording_exec)
    return processes


async def _wait_for(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


class TestCommand:
    def test_cloudflared_command(self):
        build = cloudflared_command("/usr/local/bin/cloudflared")
        assert build(5173) == [
            "/usr/local/bin/cloudflared",
            "tunnel",
            "--url",
            "http://localhost:5173",
        ]


class TestTunnelState:
    def test_to_dict_omits_unset_fields(self):
        assert TunnelState().to_dict() == {"url": "", "status": "stopped"}

    def test_to_dict_includes_error(self):
        state = TunnelState(status=TunnelStatus.ERROR, error="boom")
        assert state.to_dict() == {"url": "", "status": "error", "error": "boom"}


class TestScanLine:
    """URL discovery is isolated from process handling."""

    def test_first_url_wins_while_starting(self):
        supervisor = TunnelSupervisor()
        supervisor._state = TunnelState(status=TunnelStatus.STARTING, start_time=1)

        supervisor._scan_line("nothing here")
        assert supervisor.get_info().status is TunnelStatus.STARTING

        supervisor._scan_line(f"INF |  {URL}  |\r")
        supervisor._scan_line("INF | https://other.trycloudflare.com |")

        state = supervisor.get_info()
        assert state.status is TunnelStatus.RUNNING
        assert state.url == URL
        assert state.start_time == 1

    def test_ignored_when_not_starting(self):
        supervisor = TunnelSupervisor()
        supervisor._scan_line(URL)
        assert supervisor.get_info() == TunnelState()

    def test_custom_pattern(self):
        supervisor = TunnelSupervisor(url_pattern=r"https://[a-z]+\.example\.test")
        supervisor._state = TunnelState(status=TunnelStatus.STARTING)

        supervisor._scan_line(URL)
        supervisor._scan_line("ready at https://demo.example.test/")

        assert supervisor.get_info().url == "https://demo.example.test"


@pytest.mark.integration
class TestSupervisorProcess:
    """Lifecycle against a real child process."""

    @pytest.mark.asyncio
    async def test_starting_then_running_then_stopped(self):
        supervisor = TunnelSupervisor(command=ANNOUNCE_AND_WAIT, clock=lambda: 12.5)

        state = await supervisor.start(5173)

        assert state.status is TunnelStatus.STARTING
        assert state.start_time == 12500
        assert supervisor.is_running

        await _wait_for(lambda: supervisor.get_info().status is TunnelStatus.RUNNING)
        assert supervisor.get_info().url == URL

        await supervisor.stop()

        assert supervisor.get_info() == TunnelState()
        assert not supervisor.is_running

    @pytest.mark.asyncio
    async def test_start_while_running_is_noop(self):
        supervisor = TunnelSupervisor(command=ANNOUNCE_AND_WAIT)
        try:
            await supervisor.start(5173)
            process = supervisor._process

            await supervisor.start(8080)

            assert supervisor._process is process
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_process_exit_resets_to_stopped(self):
        supervisor = TunnelSupervisor(
            command=_script("print('" + URL + "', flush=True)")
        )

        await supervisor.start(5173)
        await _wait_for(lambda: not supervisor.is_running)

        assert supervisor.get_info() == TunnelState()

    @pytest.mark.asyncio
    async def test_exit_without_url_resets_to_stopped(self):
        supervisor = TunnelSupervisor(command=_script("import sys; sys.exit(3)"))

        await supervisor.start(5173)
        await _wait_for(lambda: not supervisor.is_running)

        assert supervisor.get_info().status is TunnelStatus.STOPPED

    @pytest.mark.asyncio
    async def test_url_on_stderr_is_found(self):
        supervisor = TunnelSupervisor(
            command=_script(
                "import sys, time\n"
                "print('" + URL + "', file=sys.stderr, flush=True)\n"
                "time.sleep(30)\n"
            )
        )
        try:
            await supervisor.start(5173)
            await _wait_for(lambda: supervisor.get_info().status is TunnelStatus.RUNNING)
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_missing_binary_is_error(self):
        supervisor = TunnelSupervisor(
            command=cloudflared_command("/nonexistent/cloudflared-binary")
        )

        state = await supervisor.start(5173)

        assert state.status is TunnelStatus.ERROR
        assert state.error
        assert not supervisor.is_running
        assert supervisor.get_info() is state

    @pytest.mark.asyncio
    async def test_restart_after_error(self):
        supervisor = TunnelSupervisor(
            command=cloudflared_command("/nonexistent/cloudflared-binary")
        )
        await supervisor.start(5173)

        supervisor._command = ANNOUNCE_AND_WAIT
        try:
            state = await supervisor.start(5173)
            assert state.status is TunnelStatus.STARTING
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_stop_kills_process_ignoring_sigterm(self):
        supervisor = TunnelSupervisor(
            command=_script(
                "import signal, time\n"
                "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
                "print('ready', flush=True)\n"
                "time.sleep(30)\n"
            ),
            stop_timeout=0.2,
        )
        await supervisor.start(5173)
        process = supervisor._process
        # Wait until the child installed its handler
        await asyncio.sleep(0.5)

        await supervisor.stop()

        assert process.returncode is not None
        assert supervisor.get_info() == TunnelState()

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self):
        supervisor = TunnelSupervisor()
        await supervisor.stop()
        assert supervisor.get_info() == TunnelState()


@pytest.mark.integration
class TestSupervisorConcurrency:
    """Overlapping start() and stop() calls own at most one relay."""

    @pytest.mark.asyncio
    async def test_concurrent_starts_spawn_one_relay(self, spawned):
        supervisor = TunnelSupervisor(command=ANNOUNCE_AND_WAIT)

        first, second = await asyncio.gather(
            supervisor.start(5173), supervisor.start(5173)
        )

        assert len(spawned) == 1
        assert supervisor._process is spawned[0]
        assert first.status is TunnelStatus.STARTING
        assert second.status is TunnelStatus.STARTING

        await supervisor.stop()

        assert spawned[0].returncode is not None
        assert supervisor.get_info() == TunnelState()

    @pytest.mark.asyncio
    async def test_stop_during_spawn_terminates_new_relay(self, spawned):
        supervisor = TunnelSupervisor(command=ANNOUNCE_AND_WAIT)

        starting = asyncio.create_task(supervisor.start(5173))
        # Let start() take the lock and begin spawning
        await asyncio.sleep(0)
        assert supervisor.get_info().status is TunnelStatus.STARTING

        await supervisor.stop()
        await starting

        assert len(spawned) == 1
        assert spawned[0].returncode is not None
        assert not supervisor.is_running
        assert supervisor.get_info() == TunnelState()

        await asyncio.sleep(0.2)
        assert supervisor.get_info() == TunnelState()
