"""CLI entry point for the rac daemon."""

import asyncio
from pathlib import Path
from typing import Any, Optional

import click

from rac import __version__
from rac.client import (
    DaemonClient,
    DaemonRequestError,
    DaemonUnavailableError,
    TokenCache,
    base_url_for,
)
from rac.config import get_config_dir, load_config
from rac.formatting import format_time_ago, short
from rac.logging import setup_logging


def _lock_path() -> Path:
    return get_config_dir() / "daemon.lock"


def _api(
    ctx: click.Context,
    method: str,
    path: str,
    payload: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Call the running daemon as the local host device."""
    config = ctx.obj["config"]

    async def _call() -> dict[str, Any]:
        cache = TokenCache(get_config_dir() / "cli-token")
        async with DaemonClient(base_url_for(config.port), token_cache=cache) as client:
            return await client.request(method, path, payload)

    try:
        return asyncio.run(_call())
    except DaemonUnavailableError:
        click.echo("Error: Cannot connect to daemon. Is it running?", err=True)
        click.echo("Start the daemon with: rac daemon start", err=True)
        raise SystemExit(1)
    except DaemonRequestError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


def _resolve(items: list[dict[str, Any]], prefix: str, kind: str) -> dict[str, Any]:
    """Find one item by full id or unique id prefix (like git short hashes)."""
    for item in items:
        if item["id"] == prefix:
            return item

    matches = [item for item in items if item["id"].startswith(prefix)]
    if not matches:
        click.echo(f"Error: {kind} '{prefix}' not found.", err=True)
        raise SystemExit(1)
    if len(matches) > 1:
        click.echo(f"Error: Ambiguous {kind.lower()} ID '{prefix}'. Matches:", err=True)
        for item in matches:
            click.echo(f"  {short(item['id'])} - {_label(item)}", err=True)
        raise SystemExit(1)
    return matches[0]


def _label(item: dict[str, Any]) -> str:
    if "device" in item:
        return item["device"].get("name", "")
    return item.get("name", "")


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None) -> None:
    """rac - Remote access control for a local dev server."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"rac version {__version__}")


# =============================================================================
# Daemon
# =============================================================================


@main.group()
def daemon() -> None:
    """Daemon control commands."""
    pass


@daemon.command()
@click.pass_context
def start(ctx: click.Context) -> None:
    """Start the daemon in the foreground."""
    from rac.daemon import Daemon, StartupError
    from rac.daemon_lock import DaemonAlreadyRunningError, DaemonLock

    config = ctx.obj["config"]
    lock = DaemonLock(_lock_path())

    try:
        lock.acquire()
    except DaemonAlreadyRunningError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    async def _start():
        daemon = Daemon(config=config)
        await daemon.start()
        click.echo(f"Daemon started on port {daemon.get_port()}")
        click.echo("Press Ctrl+C to stop")
        await daemon.run_forever()

    try:
        asyncio.run(_start())
    except StartupError as e:
        click.echo(f"Startup error: {e}", err=True)
        raise SystemExit(1)
    except KeyboardInterrupt:
        click.echo("\nShutting down...")
    finally:
        lock.release()


@daemon.command()
def stop() -> None:
    """Stop the running daemon."""
    from rac.daemon_lock import DaemonLock

    pid = DaemonLock(_lock_path()).signal_owner()
    if pid is None:
        click.echo("Daemon is not running")
        return
    click.echo(f"Stopping daemon (PID {pid})...")


@daemon.command()
def status() -> None:
    """Show daemon status."""
    from rac.daemon_lock import DaemonLock

    lock = DaemonLock(_lock_path())
    pid = lock.running_pid()
    if pid is not None:
        click.echo(f"Daemon status: running (PID {pid})")
    elif lock.get_owner_pid() is not None:
        click.echo("Daemon status: not running (stale lock file)")
    else:
        click.echo("Daemon status: not running")


# =============================================================================
# Pairing code
# =============================================================================


@main.command()
@click.option("--rotate", is_flag=True, help="Rotate the secret (revokes every token)")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
@click.pass_context
def code(ctx: click.Context, rotate: bool, force: bool) -> None:
    """Show the pairing code."""
    if rotate:
        if not force and not click.confirm(
            "Rotating the code signs out every paired device. Continue?"
        ):
            click.echo("Aborted.")
            return
        data = _api(ctx, "POST", "/api/auth/code/rotate")
    else:
        data = _api(ctx, "GET", "/api/auth/code")
    click.echo(data["code"])


# =============================================================================
# Devices
# =============================================================================


@main.group()
def devices() -> None:
    """Device management commands."""
    pass


@devices.command("list")
@click.option("--full", is_flag=True, help="Show full device IDs")
@click.pass_context
def devices_list(ctx: click.Context, full: bool) -> None:
    """List all authorized devices."""
    data = _api(ctx, "GET", "/api/devices")
    all_devices = data.get("devices", [])
    current_id = data.get("currentDeviceId")

    if not all_devices:
        click.echo("No authorized devices.")
        return

    id_width = 34 if full else 10
    click.echo(f"{'ID':<{id_width}} {'NAME':<20} {'PLATFORM':<10} {'IP':<16} {'LAST SEEN'}")
    click.echo("-" * (id_width + 64))

    for device in sorted(all_devices, key=lambda d: d["lastSeenAt"], reverse=True):
        device_id = device["id"] if full else short(device["id"])
        marker = "*" if device["id"] == current_id else ""
        click.echo(
            f"{device_id + marker:<{id_width}} "
            f"{device['name'][:20]:<20} "
            f"{device['platform'][:10]:<10} "
            f"{device['ip']:<16} "
            f"{format_time_ago(device['lastSeenAt'])}"
        )


@devices.command("remove")
@click.argument("device_id", required=False)
@click.option("--all", "remove_all", is_flag=True, help="Remove all other devices")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
@click.pass_context
def devices_remove(
    ctx: click.Context,
    device_id: str | None,
    remove_all: bool,
    force: bool,
) -> None:
    """Revoke a device.

    Use the short DEVICE_ID from 'rac devices list' (e.g., 0e49b502),
    or use --all to revoke every device except this CLI.
    """
    if remove_all:
        if not force and not click.confirm("Remove all other devices?"):
            click.echo("Aborted.")
            return
        data = _api(ctx, "POST", "/api/devices/revoke-others")
        click.echo(f"Removed {data.get('revokedCount', 0)} devices.")
        return

    if not device_id:
        click.echo("Error: Specify a device ID or use --all", err=True)
        raise SystemExit(1)

    listing = _api(ctx, "GET", "/api/devices")
    device = _resolve(listing.get("devices", []), device_id, "Device")

    if not force:
        last_seen = format_time_ago(device["lastSeenAt"])
        if not click.confirm(f"Remove device '{device['name']}' (last seen {last_seen})?"):
            click.echo("Aborted.")
            return

    _api(ctx, "DELETE", f"/api/devices/{device['id']}")
    click.echo("Device removed.")


@devices.command("rename")
@click.argument("device_id")
@click.argument("name")
@click.pass_context
def devices_rename(ctx: click.Context, device_id: str, name: str) -> None:
    """Rename a device."""
    listing = _api(ctx, "GET", "/api/devices")
    device = _resolve(listing.get("devices", []), device_id, "Device")

    data = _api(ctx, "PUT", f"/api/devices/{device['id']}/rename", {"name": name})
    click.echo(f"Renamed {short(device['id'])} to '{data['device']['name']}'.")


# =============================================================================
# Pending access requests
# =============================================================================


@main.group()
def requests() -> None:
    """Pending access request commands."""
    pass


@requests.command("list")
@click.pass_context
def requests_list(ctx: click.Context) -> None:
    """List requests waiting for approval."""
    data = _api(ctx, "GET", "/api/admin/pending-requests")
    pending = data.get("requests", [])

    if not pending:
        click.echo("No pending requests.")
        return

    click.echo(f"{'ID':<10} {'NAME':<20} {'PLATFORM':<10} {'IP':<16} {'REQUESTED'}")
    click.echo("-" * 74)
    for req in pending:
        device = req["device"]
        click.echo(
            f"{short(req['id']):<10} "
            f"{device['name'][:20]:<20} "
            f"{device['platform'][:10]:<10} "
            f"{req['ip']:<16} "
            f"{format_time_ago(req['createdAt'])}"
        )


def _pending_request(ctx: click.Context, request_id: str) -> dict[str, Any]:
    data = _api(ctx, "GET", "/api/admin/pending-requests")
    return _resolve(data.get("requests", []), request_id, "Request")


@requests.command("approve")
@click.argument("request_id")
@click.pass_context
def requests_approve(ctx: click.Context, request_id: str) -> None:
    """Approve a pending request."""
    req = _pending_request(ctx, request_id)
    data = _api(ctx, "POST", "/api/admin/approve", {"requestId": req["id"]})
    device = data["device"]
    click.echo(f"Approved '{device['name']}' as device {short(device['id'])}.")


@requests.command("deny")
@click.argument("request_id")
@click.pass_context
def requests_deny(ctx: click.Context, request_id: str) -> None:
    """Deny a pending request."""
    req = _pending_request(ctx, request_id)
    _api(ctx, "POST", "/api/admin/deny", {"requestId": req["id"]})
    click.echo(f"Denied request from '{req['device']['name']}'.")


# =============================================================================
# Tunnel
# =============================================================================


@main.group()
def tunnel() -> None:
    """Public tunnel commands."""
    pass


def _echo_tunnel(state: dict[str, Any]) -> None:
    click.echo(f"Tunnel status: {state['status']}")
    if state.get("url"):
        click.echo(f"URL: {state['url']}")
    if state.get("error"):
        click.echo(f"Error: {state['error']}")


@tunnel.command("start")
@click.option("--port", "-p", type=click.IntRange(1, 65535), default=None,
              help="Local port to expose (defaults to the daemon's port).")
@click.pass_context
def tunnel_start(ctx: click.Context, port: int | None) -> None:
    """Start the public tunnel."""
    payload = {"port": port} if port is not None else {}
    _echo_tunnel(_api(ctx, "POST", "/api/tunnel/start", payload))


@tunnel.command("stop")
@click.pass_context
def tunnel_stop(ctx: click.Context) -> None:
    """Stop the public tunnel."""
    _api(ctx, "POST", "/api/tunnel/stop")
    click.echo("Tunnel stopped.")


@tunnel.command("status")
@click.pass_context
def tunnel_status(ctx: click.Context) -> None:
    """Show tunnel status."""
    _echo_tunnel(_api(ctx, "GET", "/api/tunnel/status"))
