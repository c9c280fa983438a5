"""Message sending and queueing utilities for the rfsd hub."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import RNS

from .broadcast import (
    EV_FILE_UPLOAD,
    EV_NEW_USER,
    EV_ROOM_DATA,
    EV_USER_DISCONNECTED,
    EV_USERNAME_TAKEN,
)
from .constants import (
    B_ERR_KIND,
    B_ERR_TEXT,
    RES_KIND_EVENT,
    T_ERROR,
    T_FILE_UPLOAD,
    T_NEW_USER,
    T_ROOM_DATA,
    T_USER_DISCONNECTED,
    T_USERNAME_TAKEN,
)
from .envelope import encode, make_envelope
from .errors import RoomError

if TYPE_CHECKING:
    from .service import HubService

EVENT_TYPES: dict[str, int] = {
    EV_NEW_USER: T_NEW_USER,
    EV_USER_DISCONNECTED: T_USER_DISCONNECTED,
    EV_FILE_UPLOAD: T_FILE_UPLOAD,
    EV_ROOM_DATA: T_ROOM_DATA,
    EV_USERNAME_TAKEN: T_USERNAME_TAKEN,
}

Outgoing = list[tuple[RNS.Link, dict]]


class MessageHelper:
    """
    Builds and sends envelopes.

    Handles:
    - Reply queueing (outgoing lists flushed after a handler returns)
    - Room event delivery for the broadcaster
    - Error emission with failure kinds
    - Falling back to an RNS.Resource when an envelope exceeds the link MDU
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = hub.log

    def _src(self) -> bytes | None:
        return self.hub.identity.hash if self.hub.identity is not None else None

    def packet_would_fit(self, link: RNS.Link, payload: bytes) -> bool:
        """Check if payload fits within link MDU without creating/packing packets."""
        try:
            if hasattr(link, "MDU") and link.MDU is not None:
                return len(payload) <= link.MDU
            pkt = RNS.Packet(link, payload)
            pkt.pack()
            return True
        except Exception:
            return False

    def envelope(self, msg_type: int, *, room: str | None = None, body=None) -> dict:
        return make_envelope(msg_type, src=self._src(), room=room, body=body)

    def queue(
        self,
        outgoing: Outgoing,
        link: RNS.Link,
        msg_type: int,
        *,
        room: str | None = None,
        body=None,
    ) -> None:
        outgoing.append((link, self.envelope(msg_type, room=room, body=body)))

    def queue_error(
        self,
        outgoing: Outgoing,
        link: RNS.Link,
        *,
        kind: str,
        text: str,
        room: str | None = None,
    ) -> None:
        self.hub.stats_manager.inc("errors_sent")
        self.queue(outgoing, link, T_ERROR, room=room, body={B_ERR_KIND: kind, B_ERR_TEXT: text})

    def queue_room_error(
        self, outgoing: Outgoing, link: RNS.Link, err: RoomError, *, room: str | None = None
    ) -> None:
        self.queue_error(
            outgoing, link, kind=err.kind.value, text=str(err), room=room or err.room_id
        )

    def flush(self, outgoing: Outgoing) -> None:
        for out_link, env in outgoing:
            self.send(out_link, env)

    def deliver_event(self, link: RNS.Link, room: str, event: str, payload: Any) -> None:
        """Delivery callback for EventBroadcaster."""
        msg_type = EVENT_TYPES.get(event)
        if msg_type is None:
            raise ValueError(f"unknown event {event!r}")
        self.send(link, self.envelope(msg_type, room=room, body=payload))

    def send(self, link: RNS.Link, env: dict) -> bool:
        """Send an envelope now. Failures are logged, never raised."""
        payload = encode(env)
        if not self.packet_would_fit(link, payload):
            if self.hub.resource_manager.send_via_resource(
                link, kind=RES_KIND_EVENT, payload=payload
            ):
                return True
            self.log.warning(
                "Envelope too large for link and resource send failed link_id=%s bytes=%s",
                self.hub._fmt_link_id(link),
                len(payload),
            )
            return False

        self.hub.stats_manager.inc("bytes_out", len(payload))
        try:
            RNS.Packet(link, payload).send()
            return True
        except OSError as e:
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                self.hub._fmt_link_id(link),
                len(payload),
                e,
            )
        except Exception:
            self.log.debug(
                "Send failed link_id=%s bytes=%s",
                self.hub._fmt_link_id(link),
                len(payload),
                exc_info=True,
            )
        return False
