"""Operator approval workflow for remote pairing attempts.

State machine per request:

    pending --approve()--> approved   (mints one device and one token)
    pending --deny()-----> denied
    pending --(age > ttl)--> expired  (computed at read time, never stored)

Approved and denied are terminal. Stale requests stay in the registry and are
hidden by read-time filtering.
"""

import logging
from typing import Optional

from rac.crypto import generate_id
from rac.device_store import (
    DeviceDescriptor,
    DeviceRecord,
    JsonDeviceStore,
    PendingRequest,
    RequestStatus,
)
from rac.formatting import short

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TTL = 300.0  # seconds


class PendingRequestWorkflow:
    """Create, list and resolve pending requests stored in a device store."""

    def __init__(self, store: JsonDeviceStore, ttl: float = DEFAULT_REQUEST_TTL):
        """Initialize workflow.

        Args:
            store: Registry holding requests and devices.
            ttl: Seconds a request may stay pending before it expires.
        """
        self.store = store
        self.ttl = ttl

    @property
    def ttl_ms(self) -> int:
        return int(self.ttl * 1000)

    def create(self, descriptor: DeviceDescriptor, ip: str) -> PendingRequest:
        """Record a new pairing attempt. Repeated attempts are not merged."""
        request = PendingRequest(
            id=generate_id(),
            device=descriptor,
            ip=ip,
            status=RequestStatus.PENDING,
            created_at=self.store.now_ms(),
        )
        self.store.add_pending_request(request)
        logger.info(
            f"Access requested by {descriptor.name} from {ip} "
            f"(request {short(request.id)})"
        )
        return request

    def get(self, request_id: str) -> Optional[PendingRequest]:
        """Stored request, status as persisted."""
        return self.store.get_pending_request(request_id)

    def status(self, request_id: str) -> Optional[RequestStatus]:
        """Effective status of a request, or None if unknown."""
        request = self.store.get_pending_request(request_id)
        if request is None:
            return None
        return request.effective_status(self.store.now_ms(), self.ttl_ms)

    def list(self) -> list[PendingRequest]:
        """Requests still awaiting a decision, oldest first."""
        now = self.store.now_ms()
        return [
            r
            for r in self.store.all_pending_requests()
            if r.effective_status(now, self.ttl_ms) is RequestStatus.PENDING
        ]

    def _pending_or_none(self, request_id: str) -> Optional[PendingRequest]:
        request = self.store.get_pending_request(request_id)
        if request is None:
            return None
        status = request.effective_status(self.store.now_ms(), self.ttl_ms)
        return request if status is RequestStatus.PENDING else None

    def approve(self, request_id: str) -> Optional[PendingRequest]:
        """Approve a pending request.

        Mints a device record from the request's descriptor and a token for
        it, persisting both with the status flip in one write.

        Returns:
            The approved request (with ``device_id`` and ``token``), or None
            if the request is unknown, resolved or expired.
        """
        request = self._pending_or_none(request_id)
        if request is None:
            logger.debug(f"Approve ignored for request {short(request_id)}")
            return None

        now = self.store.now_ms()
        device = DeviceRecord(
            id=generate_id(),
            name=request.device.name,
            platform=request.device.platform,
            browser=request.device.browser,
            created_at=now,
            last_seen_at=now,
            ip=request.ip,
            is_host=False,
        )

        request.status = RequestStatus.APPROVED
        request.resolved_at = now
        request.device_id = device.id
        request.token = self.store.generate_token(device.id)

        approved = self.store.resolve_pending_request(request, device)

        logger.info(
            f"Request {short(request_id)} approved: "
            f"{device.name} ({short(device.id)})"
        )
        return approved

    def deny(self, request_id: str) -> Optional[PendingRequest]:
        """Deny a pending request.

        Returns:
            The denied request, or None if unknown, resolved or expired.
        """
        request = self._pending_or_none(request_id)
        if request is None:
            logger.debug(f"Deny ignored for request {short(request_id)}")
            return None

        request.status = RequestStatus.DENIED
        request.resolved_at = self.store.now_ms()

        denied = self.store.resolve_pending_request(request)

        logger.info(f"Request {short(request_id)} denied")
        return denied
