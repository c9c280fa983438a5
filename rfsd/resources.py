"""Resource transfer management for rfsd (uploads in, files and large events out)."""

from __future__ import annotations

import hashlib
import os
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import RNS

from .constants import (
    B_FILE_ID,
    B_FILE_KIND,
    B_FILE_NAME,
    B_FILE_PATH,
    B_FILE_SHA256,
    B_FILE_SIZE,
    B_UPLOADED_ID,
    B_UPLOADED_PATH,
    RES_KIND_FILE,
    T_FILE,
    T_UPLOADED,
)
from .envelope import encode
from .errors import RoomError
from .util import fmt_token

if TYPE_CHECKING:
    from .rooms import FileRecord
    from .service import HubService


@dataclass
class _UploadExpectation:
    """An upload announced by an UPLOAD envelope, waiting for its Resource."""

    id: bytes
    room: str
    token: str
    name: str
    size: int
    sha256: bytes | None
    uploader: str
    created_at: float
    expires_at: float


def _advertised_size(adv: Any) -> int | None:
    for attr in ("d", "total_size", "size"):
        v = getattr(adv, attr, None)
        if isinstance(v, int):
            return v
    return None


class ResourceManager:
    """Manages RNS Resource transfers for the hub."""

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = hub.log
        self._lock = threading.Lock()

        self._expectations: dict[RNS.Link, dict[bytes, _UploadExpectation]] = {}
        self._active_resources: dict[RNS.Link, set[RNS.Resource]] = {}
        # Expectation id matched to an accepted incoming Resource.
        self._bindings: dict[RNS.Resource, bytes] = {}

    def on_link_established(self, link: RNS.Link) -> None:
        with self._lock:
            self._expectations[link] = {}
            self._active_resources[link] = set()

    def on_link_closed(self, link: RNS.Link) -> None:
        with self._lock:
            self._expectations.pop(link, None)
            self._active_resources.pop(link, None)

    def clear_all(self) -> None:
        with self._lock:
            self._expectations.clear()
            self._active_resources.clear()
            self._bindings.clear()

    def configure_link_callbacks(self, link: RNS.Link) -> None:
        try:
            link.set_resource_strategy(RNS.Link.ACCEPT_APP)
            link.set_resource_callback(lambda adv: self._resource_advertised(link, adv))
            link.set_resource_started_callback(lambda resource: self._bind_started(link, resource))
            link.set_resource_concluded_callback(
                lambda resource: self._resource_concluded(link, resource)
            )
        except Exception as e:
            self.log.warning(
                "Failed to set resource callbacks link_id=%s: %s",
                self.hub._fmt_link_id(link),
                e,
            )

    # Upload expectations

    def _drop_expired(self, link: RNS.Link, now: float) -> None:
        # Caller holds self._lock.
        exp_dict = self._expectations.get(link)
        if not exp_dict:
            return
        for rid in [rid for rid, exp in exp_dict.items() if exp.expires_at <= now]:
            exp_dict.pop(rid, None)
            self.log.debug(
                "Expired upload expectation link_id=%s rid=%s",
                self.hub._fmt_link_id(link),
                rid.hex(),
            )

    def cleanup_all_expired_expectations(self) -> None:
        now = time.time()
        with self._lock:
            for link in list(self._expectations.keys()):
                self._drop_expired(link, now)

    def add_upload_expectation(
        self,
        link: RNS.Link,
        *,
        rid: bytes,
        room: str,
        token: str,
        name: str,
        size: int,
        sha256: bytes | None,
        uploader: str,
    ) -> bool:
        """Register an announced upload. Returns False if the link has too many pending."""
        now = time.time()
        with self._lock:
            self._drop_expired(link, now)
            exp_dict = self._expectations.setdefault(link, {})
            if len(exp_dict) >= int(self.hub.config.max_pending_uploads):
                return False
            exp_dict[rid] = _UploadExpectation(
                id=rid,
                room=room,
                token=token,
                name=name,
                size=size,
                sha256=sha256,
                uploader=uploader,
                created_at=now,
                expires_at=now + float(self.hub.config.upload_expectation_ttl_s),
            )

        self.log.debug(
            "Upload expected link_id=%s rid=%s room=%s name=%r size=%s token=%s",
            self.hub._fmt_link_id(link),
            rid.hex(),
            room,
            name,
            size,
            fmt_token(token),
        )
        return True

    def _match_expectation(
        self, link: RNS.Link, *, rid: bytes | None, size: int, sha256: bytes | None
    ) -> _UploadExpectation | None:
        """Bound id first, then the first size match whose sha256 (if any) agrees."""
        with self._lock:
            self._drop_expired(link, time.time())
            exp_dict = self._expectations.get(link)
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

    def _pop_expectation(self, link: RNS.Link, rid: bytes) -> None:
        with self._lock:
            exp_dict = self._expectations.get(link)
            if exp_dict:
                exp_dict.pop(rid, None)

    # Incoming transfers

    def _resource_advertised(self, link: RNS.Link, adv: Any) -> bool:
        size = _advertised_size(adv)
        if size is None or size > int(self.hub.config.max_upload_bytes):
            self.log.warning(
                "Rejecting resource (size %s, limit %s) link_id=%s",
                size,
                self.hub.config.max_upload_bytes,
                self.hub._fmt_link_id(link),
            )
            self.hub.stats_manager.inc("uploads_rejected")
            return False

        if self.hub.session_manager.get_session(link) is None:
            self.hub.stats_manager.inc("uploads_rejected")
            return False

        exp = self._match_expectation(link, rid=None, size=size, sha256=None)
        if exp is None:
            self.log.warning(
                "Rejecting resource (no matching upload) link_id=%s size=%s",
                self.hub._fmt_link_id(link),
                size,
            )
            self.hub.stats_manager.inc("uploads_rejected")
            return False

        self.log.info(
            "Accepting upload link_id=%s room=%s uploader=%r name=%r size=%s",
            self.hub._fmt_link_id(link),
            exp.room,
            exp.uploader,
            exp.name,
            size,
        )
        return True

    def _bind_started(self, link: RNS.Link, resource: RNS.Resource) -> None:
        size = _advertised_size(resource)
        exp = self._match_expectation(link, rid=None, size=size or 0, sha256=None)
        with self._lock:
            self._active_resources.setdefault(link, set()).add(resource)
            if exp is not None:
                self._bindings[resource] = exp.id

    def _resource_concluded(self, link: RNS.Link, resource: RNS.Resource) -> None:
        with self._lock:
            active = self._active_resources.get(link)
            if active:
                active.discard(resource)
            bound_rid = self._bindings.pop(resource, None)

        if resource.status != RNS.Resource.COMPLETE:
            self.log.warning(
                "Resource transfer failed link_id=%s status=%s",
                self.hub._fmt_link_id(link),
                resource.status,
            )
            return

        try:
            data = resource.data.read() if hasattr(resource.data, "read") else resource.data
            payload = bytes(data)
        except Exception as e:
            self.log.error(
                "Failed to read resource data link_id=%s: %s",
                self.hub._fmt_link_id(link),
                e,
            )
            return

        size = len(payload)
        actual_hash = hashlib.sha256(payload).digest()
        exp = self._match_expectation(link, rid=bound_rid, size=size, sha256=actual_hash)
        if exp is None:
            exp = self._match_expectation(link, rid=None, size=size, sha256=None)
        if exp is None:
            self.log.warning(
                "Received resource without upload expectation link_id=%s size=%s",
                self.hub._fmt_link_id(link),
                size,
            )
            return

        if exp.sha256 and actual_hash != exp.sha256:
            # Keep the expectation so the sender can retry.
            self.log.error(
                "Upload SHA256 mismatch link_id=%s expected=%s actual=%s",
                self.hub._fmt_link_id(link),
                exp.sha256.hex(),
                actual_hash.hex(),
            )
            self.hub.stats_manager.inc("uploads_rejected")
            return

        self._pop_expectation(link, exp.id)
        self._store_upload(link, exp, payload)

    def _store_upload(self, link: RNS.Link, exp: _UploadExpectation, payload: bytes) -> None:
        outgoing: list[tuple[RNS.Link, dict]] = []
        try:
            path = self.hub.core.upload(exp.room, exp.token, exp.name, payload)
        except RoomError as e:
            self.hub.stats_manager.inc("uploads_rejected")
            self.log.info(
                "Upload refused link_id=%s room=%s kind=%s",
                self.hub._fmt_link_id(link),
                exp.room,
                e.kind.value,
            )
            self.hub.message_helper.queue_room_error(outgoing, link, e, room=exp.room)
        except OSError as e:
            self.hub.stats_manager.inc("uploads_rejected")
            self.log.error("Upload storage failed room=%s name=%r: %s", exp.room, exp.name, e)
            self.hub.message_helper.queue_error(
                outgoing, link, kind="storage_failed", text="upload could not be stored", room=exp.room
            )
        else:
            self.hub.stats_manager.inc("uploads")
            self.hub.stats_manager.inc("upload_bytes", len(payload))
            self.hub.message_helper.queue(
                outgoing,
                link,
                T_UPLOADED,
                room=exp.room,
                body={B_UPLOADED_ID: exp.id, B_UPLOADED_PATH: path},
            )
        self.hub.message_helper.flush(outgoing)

    # Outgoing transfers

    def send_via_resource(
        self,
        link: RNS.Link,
        *,
        kind: str,
        payload: bytes,
        room: str | None = None,
        name: str | None = None,
        path: str | None = None,
    ) -> bool:
        """Announce with a FILE envelope, then send ``payload`` as an RNS.Resource.

        Returns True if the transfer was started.
        """
        rid = os.urandom(8)
        size = len(payload)
        body: dict[int, Any] = {
            B_FILE_ID: rid,
            B_FILE_KIND: kind,
            B_FILE_SIZE: size,
            B_FILE_SHA256: hashlib.sha256(payload).digest(),
        }
        if name is not None:
            body[B_FILE_NAME] = name
        if path is not None:
            body[B_FILE_PATH] = path

        try:
            announce = encode(self.hub.message_helper.envelope(T_FILE, room=room, body=body))
            RNS.Packet(link, announce).send()
            self.hub.stats_manager.inc("bytes_out", len(announce))
        except Exception as e:
            self.log.error(
                "Failed to send file envelope link_id=%s: %s",
                self.hub._fmt_link_id(link),
                e,
            )
            return False

        try:
            resource = RNS.Resource(
                payload,
                link,
                advertise=True,
                auto_compress=False,
                callback=lambda r: self._outbound_concluded(link, r),
            )
        except Exception as e:
            self.log.error(
                "Failed to create resource link_id=%s: %s",
                self.hub._fmt_link_id(link),
                e,
            )
            return False

        with self._lock:
            self._active_resources.setdefault(link, set()).add(resource)
        self.hub.stats_manager.inc("bytes_out", size)
        self.log.debug(
            "Sent resource link_id=%s rid=%s kind=%s size=%s",
            self.hub._fmt_link_id(link),
            rid.hex(),
            kind,
            size,
        )
        return True

    def _outbound_concluded(self, link: RNS.Link, resource: RNS.Resource) -> None:
        with self._lock:
            active = self._active_resources.get(link)
            if active:
                active.discard(resource)
        if resource.status != RNS.Resource.COMPLETE:
            self.log.warning(
                "Outbound resource failed link_id=%s status=%s",
                self.hub._fmt_link_id(link),
                resource.status,
            )

    def send_file(self, link: RNS.Link, room: str, record: FileRecord, data: bytes) -> bool:
        ok = self.send_via_resource(
            link,
            kind=RES_KIND_FILE,
            payload=data,
            room=room,
            name=record.name,
            path=record.path,
        )
        if ok:
            self.hub.stats_manager.inc("fetches")
            self.hub.stats_manager.inc("fetch_bytes", len(data))
        return ok
