"""Persist authorized devices, pending requests and the signing secret.

The whole registry lives in one JSON document:

    {
      "secret": "<64 hex chars>",
      "devices": {"<id>": {...}},
      "pendingRequests": {"<id>": {...}},
      "revokedTokens": ["<token>", ...]
    }

Every mutation copies the in-memory snapshot, applies the change to the copy,
rewrites the file (temp file + rename, mode 0600) and only then swaps the copy
in. A failed write leaves both the file and the in-memory state untouched.
"""

import copy
import json
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from rac import tokens
from rac.crypto import derive_access_code, generate_id, generate_secret
from rac.errors import StorageError
from rac.formatting import short
from rac.tokens import TokenResult, TokenStatus

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL = 365 * 24 * 60 * 60  # seconds

UNKNOWN_DEVICE_NAME = "Unknown Device"
UNKNOWN = "Unknown"


def _epoch_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


@dataclass
class DeviceDescriptor:
    """Self-reported description of a device asking for access."""

    name: str = UNKNOWN_DEVICE_NAME
    platform: str = UNKNOWN
    browser: str = UNKNOWN

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "platform": self.platform, "browser": self.browser}

    @classmethod
    def from_dict(cls, d: Optional[dict[str, Any]]) -> "DeviceDescriptor":
        """Build from untrusted input; blank or non-string fields fall back."""
        d = d if isinstance(d, dict) else {}

        def pick(key: str, default: str) -> str:
            value = d.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            return default

        return cls(
            name=pick("name", UNKNOWN_DEVICE_NAME),
            platform=pick("platform", UNKNOWN),
            browser=pick("browser", UNKNOWN),
        )


@dataclass
class DeviceRecord:
    """An authorized device.

    Timestamps are Unix epoch milliseconds.
    """

    id: str
    name: str
    platform: str
    browser: str
    created_at: int
    last_seen_at: int
    ip: str
    is_host: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "platform": self.platform,
            "browser": self.browser,
            "createdAt": self.created_at,
            "lastSeenAt": self.last_seen_at,
            "ip": self.ip,
            "isHost": self.is_host,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "DeviceRecord":
        """Create from dictionary."""
        return cls(
            id=str(d["id"]),
            name=str(d["name"]),
            platform=str(d.get("platform", UNKNOWN)),
            browser=str(d.get("browser", UNKNOWN)),
            created_at=int(d["createdAt"]),
            last_seen_at=int(d.get("lastSeenAt", d["createdAt"])),
            ip=str(d.get("ip", "")),
            is_host=bool(d.get("isHost", False)),
        )


class RequestStatus(Enum):
    """Pending request states. EXPIRED is only ever computed, never stored."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


@dataclass
class PendingRequest:
    """A remote pairing attempt awaiting an operator decision."""

    id: str
    device: DeviceDescriptor
    ip: str
    status: RequestStatus
    created_at: int
    resolved_at: Optional[int] = None
    device_id: Optional[str] = None
    token: Optional[str] = None

    def is_expired(self, now_ms: int, ttl_ms: int) -> bool:
        """A request still pending once its age reaches ``ttl_ms`` counts as expired."""
        return self.status is RequestStatus.PENDING and now_ms - self.created_at >= ttl_ms

    def effective_status(self, now_ms: int, ttl_ms: int) -> RequestStatus:
        if self.is_expired(now_ms, ttl_ms):
            return RequestStatus.EXPIRED
        return self.status

    def to_dict(self, include_token: bool = True) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d: dict[str, Any] = {
            "id": self.id,
            "device": self.device.to_dict(),
            "ip": self.ip,
            "status": self.status.value,
            "createdAt": self.created_at,
            "resolvedAt": self.resolved_at,
        }
        if self.device_id is not None:
            d["deviceId"] = self.device_id
        if include_token and self.token is not None:
            d["token"] = self.token
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "PendingRequest":
        """Create from dictionary."""
        status = RequestStatus(d["status"])
        if status is RequestStatus.EXPIRED:
            raise ValueError("expired is not a stored status")
        resolved_at = d.get("resolvedAt")
        return cls(
            id=str(d["id"]),
            device=DeviceDescriptor.from_dict(d.get("device")),
            ip=str(d.get("ip", "")),
            status=status,
            created_at=int(d["createdAt"]),
            resolved_at=int(resolved_at) if resolved_at is not None else None,
            device_id=d.get("deviceId"),
            token=d.get("token"),
        )


@dataclass
class StoreSnapshot:
    """The persisted unit: everything the store owns."""

    secret: str
    devices: dict[str, DeviceRecord] = field(default_factory=dict)
    pending_requests: dict[str, PendingRequest] = field(default_factory=dict)
    revoked_tokens: set[str] = field(default_factory=set)

    @classmethod
    def fresh(cls) -> "StoreSnapshot":
        """Empty registry with a newly generated secret."""
        return cls(secret=generate_secret())

    def to_dict(self) -> dict[str, Any]:
        return {
            "secret": self.secret,
            "devices": {k: v.to_dict() for k, v in self.devices.items()},
            "pendingRequests": {
                k: v.to_dict() for k, v in self.pending_requests.items()
            },
            "revokedTokens": sorted(self.revoked_tokens),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "StoreSnapshot":
        """Parse a persisted document.

        Raises:
            ValueError: If the document or its secret is unusable.
                Individual malformed entries are skipped instead.
        """
        if not isinstance(data, dict):
            raise ValueError("Store document is not an object")

        secret = data.get("secret")
        if not isinstance(secret, str) or not secret:
            raise ValueError("Store document has no secret")

        devices = data.get("devices") or {}
        requests = data.get("pendingRequests") or {}
        revoked = data.get("revokedTokens") or []
        if not (
            isinstance(devices, dict)
            and isinstance(requests, dict)
            and isinstance(revoked, list)
        ):
            raise ValueError("Store document has malformed sections")

        snapshot = cls(secret=secret)

        for key, item in devices.items():
            try:
                device = DeviceRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed device entry {short(key)}: {e}")
                continue
            snapshot.devices[device.id] = device

        for key, item in requests.items():
            try:
                request = PendingRequest.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed request entry {short(key)}: {e}")
                continue
            snapshot.pending_requests[request.id] = request

        snapshot.revoked_tokens = {t for t in revoked if isinstance(t, str)}
        return snapshot


class JsonDeviceStore:
    """JSON file-based device registry.

    The only writer of the registry file. Designed for one daemon process
    per machine (see ``rac.daemon_lock``).
    """

    MUTABLE_FIELDS = frozenset({"name", "platform", "browser", "ip"})

    def __init__(
        self,
        path: Path,
        token_ttl: int = DEFAULT_TOKEN_TTL,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize device store.

        Args:
            path: Path to JSON file for persistence.
            token_ttl: Lifetime of minted tokens in seconds.
            clock: Wall clock returning Unix seconds (injectable for tests).
        """
        self.path = Path(path).expanduser()
        self.token_ttl = token_ttl
        self.clock = clock
        self._snapshot: Optional[StoreSnapshot] = None

    # =========================================================================
    # Persistence
    # =========================================================================

    def load(self) -> None:
        """Load the registry from disk.

        A missing file, unparseable JSON or a document without a secret all
        produce a fresh registry, which is written out immediately so the
        secret (and with it the pairing code) survives restarts.
        """
        snapshot: Optional[StoreSnapshot] = None

        if self.path.exists():
            try:
                snapshot = StoreSnapshot.from_dict(json.loads(self.path.read_text()))
                logger.debug(
                    f"Loaded {len(snapshot.devices)} devices, "
                    f"{len(snapshot.pending_requests)} requests"
                )
            except (
                OSError, RecursionError, TypeError, UnicodeDecodeError, ValueError
            ) as e:
                logger.error(f"Failed to load device registry {self.path}: {e}")
        else:
            logger.debug(f"No registry file at {self.path}")

        if snapshot is None:
            snapshot = StoreSnapshot.fresh()
            self._write(snapshot)
            logger.info(f"Created new device registry at {self.path}")

        self._snapshot = snapshot

    @property
    def snapshot(self) -> StoreSnapshot:
        if self._snapshot is None:
            self.load()
        assert self._snapshot is not None
        return self._snapshot

    def _write(self, snapshot: StoreSnapshot) -> None:
        """Rewrite the whole file atomically with owner-only permissions.

        Raises:
            StorageError: If the file cannot be written.
        """
        data = json.dumps(snapshot.to_dict(), indent=2)
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            try:
                os.write(fd, data.encode())
                os.fsync(fd)
            finally:
                os.close(fd)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageError(f"Failed to save device registry: {e}") from e

    @contextmanager
    def _transaction(self) -> Iterator[StoreSnapshot]:
        """Yield a draft copy; persist and adopt it if the block succeeds."""
        draft = copy.deepcopy(self.snapshot)
        yield draft
        self._write(draft)
        self._snapshot = draft

    def now_ms(self) -> int:
        """Current time in epoch milliseconds."""
        return _epoch_ms(self.clock)

    # =========================================================================
    # Devices
    # =========================================================================

    def add_device(self, device: DeviceRecord) -> DeviceRecord:
        """Add a new device.

        Raises:
            ValueError: If a device with the same id exists.
        """
        with self._transaction() as draft:
            if device.id in draft.devices:
                raise ValueError(f"Device {short(device.id)} already exists")
            draft.devices[device.id] = replace(device)
        logger.info(f"Device added: {device.name} ({short(device.id)})")
        return replace(device)

    def create_device(
        self,
        descriptor: DeviceDescriptor,
        ip: str,
        is_host: bool = False,
    ) -> DeviceRecord:
        """Mint and persist a new device record with a fresh id."""
        now = self.now_ms()
        device = DeviceRecord(
            id=generate_id(),
            name=descriptor.name,
            platform=descriptor.platform,
            browser=descriptor.browser,
            created_at=now,
            last_seen_at=now,
            ip=ip,
            is_host=is_host,
        )
        return self.add_device(device)

    def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        """Get device by ID."""
        device = self.snapshot.devices.get(device_id)
        return replace(device) if device else None

    def update_device(self, device_id: str, **fields: Any) -> Optional[DeviceRecord]:
        """Merge ``fields`` into a device.

        Returns:
            Updated device, or None if not found.

        Raises:
            ValueError: If a field is unknown or immutable.
        """
        unknown = set(fields) - self.MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        if device_id not in self.snapshot.devices:
            return None

        with self._transaction() as draft:
            device = draft.devices[device_id]
            for name, value in fields.items():
                setattr(device, name, value)
            updated = replace(device)
        return updated

    def update_last_seen(self, device_id: str, ip: str) -> bool:
        """Refresh last-seen time and IP. Returns False if not found."""
        if device_id not in self.snapshot.devices:
            return False
        with self._transaction() as draft:
            device = draft.devices[device_id]
            device.last_seen_at = self.now_ms()
            device.ip = ip
        return True

    def remove_device(self, device_id: str) -> bool:
        """Remove a device.

        Returns:
            True if device was removed, False if not found.
        """
        if device_id not in self.snapshot.devices:
            return False
        with self._transaction() as draft:
            device = draft.devices.pop(device_id)
        logger.info(f"Device removed: {device.name} ({short(device_id)})")
        return True

    def revoke_all_except(self, keep_id: str) -> int:
        """Remove every device except ``keep_id``.

        Returns:
            Number of devices removed.
        """
        doomed = [d for d in self.snapshot.devices if d != keep_id]
        if not doomed:
            return 0
        with self._transaction() as draft:
            for device_id in doomed:
                del draft.devices[device_id]
        logger.info(f"Revoked {len(doomed)} devices, kept {short(keep_id)}")
        return len(doomed)

    def list_devices(self) -> list[DeviceRecord]:
        """All devices, oldest first."""
        devices = sorted(
            self.snapshot.devices.values(), key=lambda d: (d.created_at, d.id)
        )
        return [replace(d) for d in devices]

    def __len__(self) -> int:
        return len(self.snapshot.devices)

    def __contains__(self, device_id: str) -> bool:
        return device_id in self.snapshot.devices

    # =========================================================================
    # Tokens and pairing code
    # =========================================================================

    def generate_token(self, device_id: str) -> str:
        """Mint a session token bound to ``device_id``."""
        return tokens.issue(
            {"sub": device_id},
            self.snapshot.secret,
            self.token_ttl,
            now=int(self.clock()),
        )

    def verify_token(self, token: Any) -> TokenResult:
        """Verify signature and expiry, then revocation and device existence."""
        result = tokens.verify(token, self.snapshot.secret, now=int(self.clock()))
        if not result.valid:
            return result

        device_id = result.subject
        if (
            token in self.snapshot.revoked_tokens
            or device_id is None
            or device_id not in self.snapshot.devices
        ):
            return result.with_status(TokenStatus.REVOKED_OR_UNKNOWN_SUBJECT)

        return result

    def revoke_token(self, token: str) -> None:
        """Add a token to the revoked set."""
        if token in self.snapshot.revoked_tokens:
            return
        with self._transaction() as draft:
            draft.revoked_tokens.add(token)

    def get_access_code(self) -> str:
        """Current 6-digit pairing code."""
        return derive_access_code(self.snapshot.secret)

    def rotate_secret(self) -> str:
        """Replace the signing secret.

        Every issued token stops verifying and the pairing code changes.
        The revoked set is cleared since nothing in it can verify any more.

        Returns:
            The new pairing code.
        """
        with self._transaction() as draft:
            draft.secret = generate_secret()
            draft.revoked_tokens.clear()
        logger.warning("Signing secret rotated; all issued tokens are now invalid")
        return self.get_access_code()

    # =========================================================================
    # Pending requests
    # =========================================================================

    def add_pending_request(self, request: PendingRequest) -> PendingRequest:
        """Persist a new pending request."""
        with self._transaction() as draft:
            if request.id in draft.pending_requests:
                raise ValueError(f"Request {short(request.id)} already exists")
            draft.pending_requests[request.id] = copy.deepcopy(request)
        return copy.deepcopy(request)

    def get_pending_request(self, request_id: str) -> Optional[PendingRequest]:
        request = self.snapshot.pending_requests.get(request_id)
        return copy.deepcopy(request) if request else None

    def all_pending_requests(self) -> list[PendingRequest]:
        """Every stored request regardless of status, oldest first."""
        requests = sorted(
            self.snapshot.pending_requests.values(), key=lambda r: (r.created_at, r.id)
        )
        return [copy.deepcopy(r) for r in requests]

    def resolve_pending_request(
        self,
        request: PendingRequest,
        device: Optional[DeviceRecord] = None,
    ) -> PendingRequest:
        """Persist a request leaving ``pending`` and the device it minted.

        Both land in the same write, so an approval can never leave a
        device without its request flip or the other way round.

        Raises:
            StorageError: If the stored request is missing or already
                resolved.
        """
        if request.status is RequestStatus.PENDING:
            raise ValueError("Resolved request must not be pending")

        with self._transaction() as draft:
            current = draft.pending_requests.get(request.id)
            if current is None or current.status is not RequestStatus.PENDING:
                raise StorageError(f"Request {short(request.id)} is not pending")
            if device is not None:
                if device.id in draft.devices:
                    raise StorageError(f"Device {short(device.id)} already exists")
                draft.devices[device.id] = replace(device)
            draft.pending_requests[request.id] = copy.deepcopy(request)

        return copy.deepcopy(request)
