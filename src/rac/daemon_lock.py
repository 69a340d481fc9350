"""Single-writer guard for the device registry.

The registry file is rewritten as a whole on every change, so two daemons
pointed at the same config directory would silently drop each other's
writes. The daemon holds an fcntl lock on a PID file for its whole lifetime;
the CLI reads the same file to find (and signal) the running daemon.
"""

import fcntl
import os
import signal
from pathlib import Path
from typing import Optional

DEFAULT_LOCK_FILE = "~/.config/rac/daemon.lock"


class DaemonAlreadyRunningError(Exception):
    """Another process owns the registry."""

    def __init__(self, pid: Optional[int] = None):
        self.pid = pid
        if pid:
            super().__init__(f"Daemon already running with PID {pid}")
        else:
            super().__init__("Daemon already running")


class DaemonLock:
    """Exclusive PID-file lock held by the running daemon.

    Usage:
        with DaemonLock(Path("~/.config/rac/daemon.lock")):
            asyncio.run(daemon.run_forever())
    """

    def __init__(self, lock_file: Path | str = DEFAULT_LOCK_FILE):
        self._path = Path(lock_file).expanduser()
        self._fd: Optional[int] = None

    @property
    def path(self) -> Path:
        return self._path

    def is_held(self) -> bool:
        """Whether this instance owns the lock."""
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock and record our PID.

        A PID file left behind by a crashed daemon is taken over.

        Raises:
            DaemonAlreadyRunningError: If a live process holds the lock.
        """
        if self._fd is not None:
            return

        owner = self.get_owner_pid()
        if owner is not None and owner != os.getpid() and _pid_alive(owner):
            raise DaemonAlreadyRunningError(owner)

        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self._path), os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise DaemonAlreadyRunningError() from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(fd)
            raise DaemonAlreadyRunningError(self.get_owner_pid())

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        os.fsync(fd)
        os.chmod(self._path, 0o600)
        self._fd = fd

    def release(self) -> None:
        """Drop the lock and delete the PID file. Idempotent."""
        if self._fd is None:
            return

        fd, self._fd = self._fd, None
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def get_owner_pid(self) -> Optional[int]:
        """PID recorded in the lock file, or None if absent or unreadable."""
        try:
            return int(self._path.read_text().strip())
        except (OSError, ValueError):
            return None

    def running_pid(self) -> Optional[int]:
        """PID of a live daemon holding the lock, or None."""
        pid = self.get_owner_pid()
        if pid is None or not _pid_alive(pid):
            return None
        return pid

    def signal_owner(self, sig: int = signal.SIGTERM) -> Optional[int]:
        """Send ``sig`` to the running daemon.

        Returns:
            The signalled PID, or None if no daemon is running.
        """
        pid = self.running_pid()
        if pid is None:
            return None
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return None
        return pid

    def __enter__(self) -> "DaemonLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True
