"""Room membership coordination.

Invite issuance, invite redemption and disconnect each run as one step under
the room's lock, so two clients racing for the same username, or a disconnect
racing with teardown, always resolve to a single winner. Peer notifications
are sent after the lock is released but before the operation returns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .broadcast import EV_NEW_USER, EV_USER_DISCONNECTED
from .errors import InvalidCode, InvalidUsername, RoomNotFound, UsernameTaken
from .rooms import Member
from .util import USERNAME_MAX_CHARS, fmt_token, normalize_username

if TYPE_CHECKING:
    from .broadcast import EventBroadcaster, SessionRegistry
    from .ids import IdGenerator
    from .rooms import FileRecord, RoomDirectory


@dataclass(frozen=True)
class Invite:
    room_id: str
    code: str
    username: str


@dataclass(frozen=True)
class RoomSnapshot:
    """One-time payload handed to a member's session when it connects."""

    room_id: str
    username: str
    upload_token: str
    files: list[FileRecord] = field(default_factory=list)
    member_usernames: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.room_id,
            "username": self.username,
            "upload_token": self.upload_token,
            "files": [f.as_dict() for f in self.files],
            "users": list(self.member_usernames),
        }


class MembershipCoordinator:
    def __init__(
        self,
        directory: RoomDirectory,
        sessions: SessionRegistry,
        broadcaster: EventBroadcaster,
        ids: IdGenerator,
        *,
        username_max_chars: int = USERNAME_MAX_CHARS,
    ) -> None:
        self.directory = directory
        self.sessions = sessions
        self.broadcaster = broadcaster
        self.ids = ids
        self.username_max_chars = username_max_chars
        self.log = logging.getLogger("rfsd.membership")

    def _username(self, room_id: str | None, value: Any) -> str:
        username = normalize_username(value, max_chars=self.username_max_chars)
        if username is None:
            raise InvalidUsername(room_id)
        return username

    def create_room(self, username: Any) -> Invite:
        name = self._username(None, username)
        room_id, code = self.directory.create_room(name)
        return Invite(room_id=room_id, code=code, username=name)

    def issue_invite(self, room_id: str, username: Any) -> Invite:
        """Reserve ``username`` in the room and return a fresh connection code.

        A name held by a member or by an unredeemed invite is taken.
        """
        name = self._username(room_id, username)
        room = self.directory.require_room(room_id)
        with room.lock:
            if room.closed:
                raise RoomNotFound(room_id)
            if room.username_claimed(name):
                raise UsernameTaken(room_id)
            code = self.ids.opaque_id()
            while code in room.pending_invites:
                code = self.ids.opaque_id()
            room.pending_invites[code] = name

        self.log.info("Invite issued room=%s user=%r", room_id, name)
        return Invite(room_id=room_id, code=code, username=name)

    def redeem_invite(self, room_id: str, code: str | None, session: Any) -> RoomSnapshot:
        """Consume a connection code and bind ``session`` as a new member."""
        room = self.directory.require_room(room_id)
        with room.lock:
            if room.closed:
                raise RoomNotFound(room_id)
            if not code:
                raise InvalidCode(room_id)
            username = room.pending_invites.pop(code, None)
            if username is None:
                raise InvalidCode(room_id)
            if username in room.members:
                # Issuance excludes this; only reachable through direct state edits.
                raise UsernameTaken(room_id)

            token = self.ids.opaque_id()
            while room.token_in_use(token):
                token = self.ids.opaque_id()

            room.members[username] = Member(username=username, upload_token=token)
            self.sessions.bind(room_id, username, session)
            recipients = room.usernames()
            snapshot = RoomSnapshot(
                room_id=room_id,
                username=username,
                upload_token=token,
                files=list(room.files),
                member_usernames=list(recipients),
            )

        self.log.info(
            "Member joined room=%s user=%r token=%s members=%s",
            room_id,
            username,
            fmt_token(token),
            len(recipients),
        )
        self.broadcaster.broadcast(room_id, EV_NEW_USER, username, recipients=recipients)
        return snapshot

    def disconnect(self, room_id: str | None, username: str | None) -> bool:
        """Remove a member; tear the room down when it becomes empty.

        Unknown rooms and usernames are ignored. Returns True if a member
        was removed.
        """
        room = self.directory.get_room(room_id)
        if room is None or not username:
            self.log.debug("Disconnect ignored room=%s user=%r", room_id, username)
            return False

        with room.lock:
            member = room.members.pop(username, None)
            if member is None:
                self.log.debug("Disconnect of absent member room=%s user=%r", room_id, username)
                return False
            self.sessions.unbind(room.id, username)
            recipients = room.usernames()
            teardown = not room.members and not room.closed
            if teardown:
                room.closed = True

        self.log.info(
            "Member left room=%s user=%r remaining=%s", room.id, username, len(recipients)
        )

        if recipients:
            self.broadcaster.broadcast(
                room.id, EV_USER_DISCONNECTED, username, recipients=recipients
            )

        if teardown:
            self.sessions.drop_room(room.id)
            self.directory.delete_room(room.id)

        return True
