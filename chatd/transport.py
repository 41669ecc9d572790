"""Packet and resource transport for chatd envelopes."""

from __future__ import annotations

import hashlib
import logging
import os
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import RNS

from .constants import (
    B_RES_ID,
    B_RES_KIND,
    B_RES_SHA256,
    B_RES_SIZE,
    RES_KIND_ENVELOPE,
    T_RESOURCE_ENVELOPE,
)
from .envelope import encode, make_envelope
from .errors import ValidationError
from .util import link_id_hex

if TYPE_CHECKING:
    from .service import HubService


@dataclass
class _ResourceExpectation:
    """Tracks an announced incoming Resource transfer."""

    id: bytes
    kind: str
    size: int
    sha256: bytes | None
    created_at: float
    expires_at: float


class ResourceTransport:
    """
    Sends encoded envelopes over a link.

    Envelopes that fit the link MDU go out as a single packet. Larger ones
    (typically history pages) are announced with a RESOURCE_ENVELOPE and then
    transferred as an ``RNS.Resource``. Clients may do the same in the other
    direction; a completed inbound resource is routed exactly like a packet.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatd.transport")

        self._resource_expectations: dict[RNS.Link, dict[bytes, _ResourceExpectation]] = {}
        self._active_resources: dict[RNS.Link, set[RNS.Resource]] = {}
        self._resource_bindings: dict[RNS.Resource, bytes] = {}

    def on_link_established(self, link: RNS.Link) -> None:
        self._resource_expectations[link] = {}
        self._active_resources[link] = set()

    def on_link_closed(self, link: RNS.Link) -> None:
        self._resource_expectations.pop(link, None)
        for resource in self._active_resources.pop(link, set()):
            self._resource_bindings.pop(resource, None)

    def clear_all(self) -> None:
        self._resource_expectations.clear()
        self._active_resources.clear()
        self._resource_bindings.clear()

    def configure_link_callbacks(self, link: RNS.Link) -> None:
        if not self.hub.config.enable_resource_transfer:
            return

        try:
            link.set_resource_strategy(RNS.Link.ACCEPT_APP)
            link.set_resource_callback(self._resource_advertised)
            link.set_resource_concluded_callback(self._resource_concluded)
        except Exception as e:
            self.log.warning(
                "Failed to set resource callbacks link_id=%s: %s", link_id_hex(link), e
            )

    # Outbound

    def packet_fits(self, link: RNS.Link, payload: bytes) -> bool:
        mdu = getattr(link, "MDU", None)
        if mdu is not None:
            return len(payload) <= int(mdu)
        try:
            pkt = RNS.Packet(link, payload)
            pkt.pack()
            return True
        except Exception:
            return False

    def send(self, link: RNS.Link, payload: bytes) -> bool:
        """Send one encoded envelope. Returns False if it had to be dropped."""
        if self.packet_fits(link, payload):
            RNS.Packet(link, payload).send()
            self.hub.stats_manager.inc("bytes_out", len(payload))
            return True

        if self.send_via_resource(link, kind=RES_KIND_ENVELOPE, payload=payload):
            return True

        self.log.warning(
            "Dropping envelope larger than link MDU link_id=%s bytes=%s",
            link_id_hex(link),
            len(payload),
        )
        return False

    def send_via_resource(self, link: RNS.Link, *, kind: str, payload: bytes) -> bool:
        if not self.hub.config.enable_resource_transfer:
            return False

        size = len(payload)
        if size > self.hub.config.max_resource_bytes:
            self.log.error(
                "Payload too large for resource transfer: %s > %s",
                size,
                self.hub.config.max_resource_bytes,
            )
            return False

        rid = os.urandom(8)
        announcement = make_envelope(
            T_RESOURCE_ENVELOPE,
            src=self.hub.src_hash,
            body={
                B_RES_ID: rid,
                B_RES_KIND: kind,
                B_RES_SIZE: size,
                B_RES_SHA256: hashlib.sha256(payload).digest(),
            },
        )
        announcement_payload = encode(announcement)
        RNS.Packet(link, announcement_payload).send()
        self.hub.stats_manager.inc("bytes_out", len(announcement_payload))

        resource = RNS.Resource(payload, link, advertise=True, auto_compress=False)
        with self.hub._state_lock:
            self._active_resources.setdefault(link, set()).add(resource)

        self.hub.stats_manager.inc("resources_sent")
        self.hub.stats_manager.inc("bytes_out", size)
        self.log.info(
            "Sent resource link_id=%s rid=%s kind=%s size=%s",
            link_id_hex(link),
            rid.hex(),
            kind,
            size,
        )
        return True

    # Inbound

    def expect(self, link: RNS.Link, body: Any) -> None:
        """
        Register a client's RESOURCE_ENVELOPE announcement.

        Raises ValidationError when the announcement is unusable.
        Must be called with state lock held.
        """
        if not self.hub.config.enable_resource_transfer:
            raise ValidationError("resource transfer disabled")
        if not isinstance(body, dict):
            raise ValidationError("invalid resource envelope body")

        rid = body.get(B_RES_ID)
        kind = body.get(B_RES_KIND)
        size = body.get(B_RES_SIZE)
        sha256 = body.get(B_RES_SHA256)

        if not isinstance(rid, (bytes, bytearray)):
            raise ValidationError("resource envelope missing id")
        if kind != RES_KIND_ENVELOPE:
            raise ValidationError(f"unsupported resource kind {kind!r}")
        if not isinstance(size, int) or size < 0:
            raise ValidationError("resource envelope invalid size")
        if size > self.hub.config.max_resource_bytes:
            raise ValidationError(
                f"resource too large: {size} > {self.hub.config.max_resource_bytes}"
            )
        if sha256 is not None and not isinstance(sha256, (bytes, bytearray)):
            raise ValidationError("resource envelope invalid sha256")

        self.cleanup_expired_expectations(link)
        exp_dict = self._resource_expectations.setdefault(link, {})
        if len(exp_dict) >= self.hub.config.max_pending_resource_expectations:
            raise ValidationError("too many pending resource expectations")

        now = time.time()
        exp_dict[bytes(rid)] = _ResourceExpectation(
            id=bytes(rid),
            kind=kind,
            size=size,
            sha256=bytes(sha256) if sha256 else None,
            created_at=now,
            expires_at=now + self.hub.config.resource_expectation_ttl_s,
        )
        self.log.debug(
            "Added resource expectation link_id=%s rid=%s size=%s",
            link_id_hex(link),
            bytes(rid).hex(),
            size,
        )

    def cleanup_expired_expectations(self, link: RNS.Link) -> None:
        now = time.time()
        exp_dict = self._resource_expectations.get(link)
        if not exp_dict:
            return
        for rid in [rid for rid, exp in exp_dict.items() if exp.expires_at <= now]:
            exp_dict.pop(rid, None)

    def cleanup_all_expired_expectations(self) -> None:
        with self.hub._state_lock:
            for link in list(self._resource_expectations):
                self.cleanup_expired_expectations(link)

    def match_expectation(
        self, link: RNS.Link, *, rid: bytes | None, size: int, sha256: bytes | None
    ) -> _ResourceExpectation | None:
        """Bound RID first, then the first size match whose digest agrees."""
        self.cleanup_expired_expectations(link)
        exp_dict = self._resource_expectations.get(link)
        if not exp_dict:
            return None
        if rid is not None and rid in exp_dict:
            return exp_dict[rid]
        for exp in exp_dict.values():
            if exp.size != size:
                continue
            if exp.sha256 and sha256 and exp.sha256 != sha256:
                continue
            return exp
        return None

    def _resource_advertised(self, resource: RNS.Resource) -> bool:
        link = resource.link
        size = resource.total_size if hasattr(resource, "total_size") else resource.size

        if size > self.hub.config.max_resource_bytes:
            self.log.warning(
                "Rejecting resource (too large: %s > %s) link_id=%s",
                size,
                self.hub.config.max_resource_bytes,
                link_id_hex(link),
            )
            self.hub.stats_manager.inc("resources_rejected")
            return False

        with self.hub._state_lock:
            if not self.hub.session_manager.is_authenticated(link):
                self.hub.stats_manager.inc("resources_rejected")
                return False
            exp = self.match_expectation(link, rid=None, size=size, sha256=None)
            if exp is None:
                self.log.warning(
                    "Rejecting resource (no matching expectation) link_id=%s size=%s",
                    link_id_hex(link),
                    size,
                )
                self.hub.stats_manager.inc("resources_rejected")
                return False
            self._active_resources.setdefault(link, set()).add(resource)
            self._resource_bindings[resource] = exp.id

        return True

    def _resource_concluded(self, resource: RNS.Resource) -> None:
        link = resource.link

        with self.hub._state_lock:
            active_set = self._active_resources.get(link)
            if active_set:
                active_set.discard(resource)
            bound_rid = self._resource_bindings.pop(resource, None)

        if resource.status != RNS.Resource.COMPLETE:
            self.log.warning(
                "Resource transfer failed link_id=%s status=%s",
                link_id_hex(link),
                resource.status,
            )
            return

        data = resource.data.read() if hasattr(resource.data, "read") else resource.data
        payload = bytes(data)
        digest = hashlib.sha256(payload).digest()

        with self.hub._state_lock:
            exp = self.match_expectation(link, rid=bound_rid, size=len(payload), sha256=digest)
            if exp is None:
                self.log.warning(
                    "Received resource without expectation link_id=%s size=%s",
                    link_id_hex(link),
                    len(payload),
                )
                return
            if exp.sha256 and exp.sha256 != digest:
                self.log.error(
                    "Resource SHA256 mismatch link_id=%s expected=%s actual=%s",
                    link_id_hex(link),
                    exp.sha256.hex(),
                    digest.hex(),
                )
                return
            self._resource_expectations.get(link, {}).pop(exp.id, None)

        self.hub.stats_manager.inc("resources_received")
        self.log.info("Resource received link_id=%s size=%s", link_id_hex(link), len(payload))
        self.hub._on_packet(link, payload)
