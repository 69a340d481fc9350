"""Authorization facade called by the HTTP boundary.

Entry flows:
1. Local auto-auth: loopback callers get a device and token directly
2. Direct verify: a matching pairing code mints a device and token
3. Request access: a matching pairing code from a remote caller creates a
   pending request; the caller polls check_status() until an operator
   approves or denies it
4. Validate: bearer tokens are checked against the registry

Every token failure (missing, malformed, bad signature, expired, revoked,
device gone) raises the same UnauthorizedError so responses cannot be used as
an oracle.
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Any, Optional

from rac.device_store import DeviceDescriptor, DeviceRecord, JsonDeviceStore, PendingRequest
from rac.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
)
from rac.formatting import short
from rac.ip_provider import is_loopback
from rac.pairing import PendingRequestWorkflow

logger = logging.getLogger(__name__)

LOCAL_DEVICE_NAME = "Local Machine"
MAX_NAME_LENGTH = 100


@dataclass(frozen=True)
class AuthGrant:
    """A freshly minted credential."""

    token: str
    device: DeviceRecord

    @property
    def device_id(self) -> str:
        return self.device.id


@dataclass(frozen=True)
class AccessStatus:
    """Answer to a check-status poll."""

    status: str  # pending, approved, denied, expired, not_found
    token: Optional[str] = None
    device_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"status": self.status}
        if self.status == "approved":
            d["token"] = self.token
            d["deviceId"] = self.device_id
        return d


class AuthGateway:
    """Login, verification and device management on top of the registry."""

    def __init__(self, store: JsonDeviceStore, workflow: PendingRequestWorkflow):
        """Initialize gateway.

        Args:
            store: Device registry.
            workflow: Pending request workflow sharing the same store.
        """
        self.store = store
        self.workflow = workflow

    # =========================================================================
    # Credential issuance
    # =========================================================================

    def _mint(self, descriptor: DeviceDescriptor, ip: str, is_host: bool) -> AuthGrant:
        device = self.store.create_device(descriptor, ip, is_host=is_host)
        token = self.store.generate_token(device.id)
        return AuthGrant(token=token, device=device)

    def _code_matches(self, code: Any) -> bool:
        if not isinstance(code, str):
            return False
        expected = self.store.get_access_code()
        return hmac.compare_digest(code.encode(), expected.encode())

    def local_auth(
        self, ip: str, descriptor: Optional[DeviceDescriptor] = None
    ) -> AuthGrant:
        """Mint a host device for a loopback caller without a pairing code.

        Raises:
            ForbiddenError: If the caller is not loopback.
        """
        if not is_loopback(ip):
            logger.warning(f"Local auth refused for non-loopback caller {ip}")
            raise ForbiddenError("Local authentication is only available from this machine")

        descriptor = descriptor or DeviceDescriptor(name=LOCAL_DEVICE_NAME)
        grant = self._mint(descriptor, ip, is_host=True)
        logger.info(f"Local device authorized: {grant.device.name} ({short(grant.device_id)})")
        return grant

    def verify_code(
        self, code: Any, ip: str, descriptor: Optional[DeviceDescriptor] = None
    ) -> AuthGrant:
        """Mint a device immediately if ``code`` is the current pairing code.

        Raises:
            UnauthorizedError: If the code does not match.
        """
        if not self._code_matches(code):
            logger.warning(f"Invalid pairing code from {ip}")
            raise UnauthorizedError("Invalid code")

        grant = self._mint(descriptor or DeviceDescriptor(), ip, is_host=False)
        logger.info(f"Device authorized by code: {grant.device.name} ({short(grant.device_id)})")
        return grant

    def request_access(
        self, code: Any, ip: str, descriptor: Optional[DeviceDescriptor] = None
    ) -> PendingRequest:
        """Queue a pairing attempt for operator approval.

        Raises:
            UnauthorizedError: If the code does not match.
        """
        if not self._code_matches(code):
            logger.warning(f"Invalid pairing code in access request from {ip}")
            raise UnauthorizedError("Invalid code")

        return self.workflow.create(descriptor or DeviceDescriptor(), ip)

    def check_status(self, request_id: Optional[str]) -> AccessStatus:
        """Report the effective status of a pending request."""
        if not request_id:
            return AccessStatus("not_found")

        request = self.workflow.get(request_id)
        if request is None:
            return AccessStatus("not_found")

        status = self.workflow.status(request_id)
        assert status is not None
        return AccessStatus(
            status=status.value,
            token=request.token,
            device_id=request.device_id,
        )

    # =========================================================================
    # Bearer token operations
    # =========================================================================

    def authenticate(self, token: Optional[str], ip: str) -> DeviceRecord:
        """Validate a bearer token and refresh the device's last-seen state.

        Raises:
            UnauthorizedError: For every failure mode.
        """
        if not token:
            raise UnauthorizedError()

        result = self.store.verify_token(token)
        device_id = result.subject
        if not result.valid or device_id is None:
            logger.debug(f"Token rejected from {ip}: {result.status.value}")
            raise UnauthorizedError()

        self.store.update_last_seen(device_id, ip)
        device = self.store.get_device(device_id)
        if device is None:
            raise UnauthorizedError()
        return device

    def logout(self, token: Optional[str], ip: str) -> None:
        """Remove the calling device and revoke its token."""
        device = self.authenticate(token, ip)
        assert token is not None
        self.store.remove_device(device.id)
        self.store.revoke_token(token)
        logger.info(f"Device logged out: {device.name} ({short(device.id)})")

    def get_code(self, token: Optional[str], ip: str) -> str:
        self.authenticate(token, ip)
        return self.store.get_access_code()

    def rotate_code(self, token: Optional[str], ip: str) -> str:
        """Rotate the signing secret. The caller's own token stops working too."""
        device = self.authenticate(token, ip)
        code = self.store.rotate_secret()
        logger.warning(f"Pairing code rotated by {device.name} ({short(device.id)})")
        return code

    def list_devices(
        self, token: Optional[str], ip: str
    ) -> tuple[list[DeviceRecord], str]:
        """All devices plus the caller's own id."""
        caller = self.authenticate(token, ip)
        return self.store.list_devices(), caller.id

    def revoke(self, token: Optional[str], ip: str, device_id: str) -> None:
        """Remove another device.

        Raises:
            ConflictError: If the target is the caller (use logout).
            NotFoundError: If the device does not exist.
        """
        caller = self.authenticate(token, ip)
        if device_id == caller.id:
            raise ConflictError("Cannot revoke current device. Use logout instead.")
        if not self.store.remove_device(device_id):
            raise NotFoundError("Device not found")

    def rename(
        self, token: Optional[str], ip: str, device_id: str, name: Any
    ) -> DeviceRecord:
        """Change a device's display name.

        Raises:
            BadRequestError: If the name is empty, too long or not a string.
            NotFoundError: If the device does not exist.
        """
        self.authenticate(token, ip)
        if not isinstance(name, str) or not name.strip():
            raise BadRequestError("Name is required")
        name = name.strip()
        if len(name) > MAX_NAME_LENGTH:
            raise BadRequestError(f"Name must be at most {MAX_NAME_LENGTH} characters")

        device = self.store.update_device(device_id, name=name)
        if device is None:
            raise NotFoundError("Device not found")
        return device

    def revoke_all_except(self, token: Optional[str], ip: str) -> int:
        """Remove every device other than the caller's."""
        caller = self.authenticate(token, ip)
        return self.store.revoke_all_except(caller.id)

    # =========================================================================
    # Operator approval
    # =========================================================================

    def list_pending(self, token: Optional[str], ip: str) -> list[PendingRequest]:
        self.authenticate(token, ip)
        return self.workflow.list()

    def approve(self, token: Optional[str], ip: str, request_id: Any) -> DeviceRecord:
        """Approve a pending request.

        Raises:
            BadRequestError: If request_id is missing.
            NotFoundError: If the request is unknown, resolved or expired.
        """
        self.authenticate(token, ip)
        if not isinstance(request_id, str) or not request_id:
            raise BadRequestError("requestId is required")

        approved = self.workflow.approve(request_id)
        if approved is None or approved.device_id is None:
            raise NotFoundError("Request not found or already processed")

        device = self.store.get_device(approved.device_id)
        assert device is not None
        return device

    def deny(self, token: Optional[str], ip: str, request_id: Any) -> PendingRequest:
        """Deny a pending request.

        Raises:
            BadRequestError: If request_id is missing.
            NotFoundError: If the request is unknown, resolved or expired.
        """
        self.authenticate(token, ip)
        if not isinstance(request_id, str) or not request_id:
            raise BadRequestError("requestId is required")

        denied = self.workflow.deny(request_id)
        if denied is None:
            raise NotFoundError("Request not found or already processed")
        return denied
