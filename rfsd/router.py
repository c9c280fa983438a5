from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import RNS

from .constants import (
    B_CONNECT_CODE,
    B_FETCH_PATH,
    B_FETCH_TOKEN,
    B_INVITE_CODE,
    B_INVITE_ROOM,
    B_INVITE_USERNAME,
    B_UP_ID,
    B_UP_NAME,
    B_UP_SHA256,
    B_UP_SIZE,
    B_UP_TOKEN,
    B_USERNAME,
    K_BODY,
    K_ROOM,
    K_T,
    T_CONNECT,
    T_CREATE,
    T_FETCH,
    T_INVITE,
    T_JOIN_REQUEST,
    T_LEAVE,
    T_PING,
    T_PONG,
    T_ROOM_DATA,
    T_UPLOAD,
    T_USERNAME_TAKEN,
)
from .envelope import decode, validate_envelope
from .errors import RoomError, UsernameTaken
from .messages import Outgoing

if TYPE_CHECKING:
    from .service import HubService


def _body_get(body: Any, key: int) -> Any:
    return body.get(key) if isinstance(body, dict) else None


class MessageRouter:
    """
    Decodes incoming packets and dispatches them to the room core.

    This class is responsible for:
    - Decoding and validating envelopes
    - Dispatching by type (CREATE, JOIN_REQUEST, CONNECT, LEAVE, UPLOAD, FETCH, PING)
    - Translating room failures into ERROR / USERNAME_TAKEN replies
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rfsd.router")

    def route_packet(self, link: RNS.Link, data: bytes, outgoing: Outgoing) -> None:
        if self.hub.session_manager.get_session(link) is None:
            return

        stats = self.hub.stats_manager
        stats.inc("pkts_in")
        stats.inc("bytes_in", len(data))

        try:
            env = decode(data)
            validate_envelope(env)
        except Exception as e:
            stats.inc("pkts_bad")
            self.log.debug(
                "Bad packet link_id=%s bytes=%s err=%s",
                self.hub._fmt_link_id(link),
                len(data),
                e,
            )
            self.hub.message_helper.queue_error(
                outgoing, link, kind="bad_message", text=f"bad message: {e}"
            )
            return

        t = env.get(K_T)
        room = env.get(K_ROOM)
        body = env.get(K_BODY)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX link_id=%s t=%s room=%r bytes=%s",
                self.hub._fmt_link_id(link),
                t,
                room,
                len(data),
            )

        try:
            if t == T_PING:
                self.hub.message_helper.queue(outgoing, link, T_PONG, body=body)
            elif t == T_CREATE:
                self._handle_create(link, body, outgoing)
            elif t == T_JOIN_REQUEST:
                self._handle_join_request(link, room, body, outgoing)
            elif t == T_CONNECT:
                self._handle_connect(link, room, body, outgoing)
            elif t == T_LEAVE:
                self._handle_leave(link)
            elif t == T_UPLOAD:
                self._handle_upload(link, room, body, outgoing)
            elif t == T_FETCH:
                self._handle_fetch(link, room, body, outgoing)
            else:
                self.hub.message_helper.queue_error(
                    outgoing, link, kind="unsupported", text=f"unsupported message type {t}"
                )
        except UsernameTaken as e:
            self.log.info("Username taken room=%s link_id=%s", room, self.hub._fmt_link_id(link))
            self.hub.message_helper.queue(outgoing, link, T_USERNAME_TAKEN, room=room)
            self.hub.message_helper.queue_room_error(outgoing, link, e, room=room)
        except RoomError as e:
            self.log.info(
                "Request refused t=%s room=%s kind=%s link_id=%s",
                t,
                room,
                e.kind.value,
                self.hub._fmt_link_id(link),
            )
            self.hub.message_helper.queue_room_error(outgoing, link, e, room=room)
        except OSError as e:
            self.log.error("Storage error t=%s room=%s: %s", t, room, e)
            self.hub.message_helper.queue_error(
                outgoing, link, kind="storage_failed", text="storage error", room=room
            )

    def _queue_invite(self, outgoing: Outgoing, link: RNS.Link, invite) -> None:
        self.hub.message_helper.queue(
            outgoing,
            link,
            T_INVITE,
            room=invite.room_id,
            body={
                B_INVITE_ROOM: invite.room_id,
                B_INVITE_CODE: invite.code,
                B_INVITE_USERNAME: invite.username,
            },
        )

    def _handle_create(self, link: RNS.Link, body: Any, outgoing: Outgoing) -> None:
        invite = self.hub.core.create_room(_body_get(body, B_USERNAME))
        self.hub.stats_manager.inc("rooms_created")
        self._queue_invite(outgoing, link, invite)

    def _handle_join_request(
        self, link: RNS.Link, room: str | None, body: Any, outgoing: Outgoing
    ) -> None:
        invite = self.hub.core.join_request(room, _body_get(body, B_USERNAME))
        self.hub.stats_manager.inc("invites")
        self._queue_invite(outgoing, link, invite)

    def _handle_connect(
        self, link: RNS.Link, room: str | None, body: Any, outgoing: Outgoing
    ) -> None:
        bound_room, bound_user = self.hub.session_manager.binding(link)
        if bound_room is not None:
            self.hub.message_helper.queue_error(
                outgoing,
                link,
                kind="already_connected",
                text=f"already connected to room {bound_room} as {bound_user!r}",
                room=room,
            )
            return

        code = _body_get(body, B_CONNECT_CODE)
        snapshot = self.hub.core.connect(room, code if isinstance(code, str) else None, link)

        if not self.hub.session_manager.bind(link, snapshot.room_id, snapshot.username):
            # Link closed while connecting.
            self.hub.core.disconnect(snapshot.room_id, snapshot.username)
            return

        self.hub.stats_manager.inc("joins")
        self.log.info(
            "CONNECT room=%s user=%r link_id=%s",
            snapshot.room_id,
            snapshot.username,
            self.hub._fmt_link_id(link),
        )
        self.hub.message_helper.queue(
            outgoing, link, T_ROOM_DATA, room=snapshot.room_id, body=snapshot.as_dict()
        )

    def _handle_leave(self, link: RNS.Link) -> None:
        room_id, username = self.hub.session_manager.leave_room(link)
        if room_id is not None:
            self.log.info(
                "LEAVE room=%s user=%r link_id=%s",
                room_id,
                username,
                self.hub._fmt_link_id(link),
            )

    def _handle_upload(
        self, link: RNS.Link, room: str | None, body: Any, outgoing: Outgoing
    ) -> None:
        """Validate an UPLOAD announcement and expect the Resource that follows."""
        helper = self.hub.message_helper
        if not isinstance(body, dict):
            helper.queue_error(outgoing, link, kind="bad_upload", text="invalid upload body", room=room)
            return

        rid = body.get(B_UP_ID)
        token = body.get(B_UP_TOKEN)
        name = body.get(B_UP_NAME)
        size = body.get(B_UP_SIZE)
        sha256 = body.get(B_UP_SHA256)

        if not isinstance(rid, (bytes, bytearray)):
            helper.queue_error(outgoing, link, kind="bad_upload", text="upload missing id", room=room)
            return
        if not isinstance(name, str) or not name.strip():
            helper.queue_error(outgoing, link, kind="bad_upload", text="upload missing file name", room=room)
            return
        if not isinstance(size, int) or size <= 0:
            helper.queue_error(outgoing, link, kind="no_file", text="no file uploaded", room=room)
            return
        if size > int(self.hub.config.max_upload_bytes):
            helper.queue_error(
                outgoing,
                link,
                kind="too_large",
                text=f"file too large: {size} > {self.hub.config.max_upload_bytes}",
                room=room,
            )
            return
        if sha256 is not None and not isinstance(sha256, (bytes, bytearray)):
            helper.queue_error(outgoing, link, kind="bad_upload", text="upload invalid sha256", room=room)
            return

        uploader = self.hub.core.check_upload(room, token if isinstance(token, str) else None)

        if not self.hub.resource_manager.add_upload_expectation(
            link,
            rid=bytes(rid),
            room=room,
            token=token,
            name=name,
            size=size,
            sha256=bytes(sha256) if sha256 else None,
            uploader=uploader,
        ):
            helper.queue_error(
                outgoing, link, kind="busy", text="too many pending uploads", room=room
            )

    def _handle_fetch(
        self, link: RNS.Link, room: str | None, body: Any, outgoing: Outgoing
    ) -> None:
        token = _body_get(body, B_FETCH_TOKEN)
        path = _body_get(body, B_FETCH_PATH)
        if not isinstance(path, str) or not path:
            self.hub.message_helper.queue_error(
                outgoing, link, kind="bad_fetch", text="fetch missing path", room=room
            )
            return

        record, data = self.hub.core.fetch(room, token if isinstance(token, str) else None, path)
        if not self.hub.resource_manager.send_file(link, room, record, data):
            self.hub.message_helper.queue_error(
                outgoing, link, kind="send_failed", text="file transfer failed", room=room
            )
