"""Room directory for the rfsd hub.

This module holds the authoritative in-memory table of active rooms:
- Room membership (identity only; live sessions live in broadcast.SessionRegistry)
- Pending invitations (connection code -> username)
- Append-only file list per room
- Room-scoped storage allocation and release
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import RoomNotFound

if TYPE_CHECKING:
    from .ids import IdGenerator
    from .storage import RoomStorage


@dataclass(frozen=True)
class FileRecord:
    name: str
    path: str
    uploader: str

    def as_dict(self) -> dict[str, str]:
        return {"name": self.name, "path": self.path, "uploader": self.uploader}


@dataclass
class Member:
    username: str
    upload_token: str


@dataclass(eq=False)
class Room:
    """State of one room.

    Reads and writes of members, pending_invites and files happen with
    ``lock`` held. ``closed`` flips once, at teardown, under the same lock.
    """

    id: str
    members: dict[str, Member] = field(default_factory=dict)
    pending_invites: dict[str, str] = field(default_factory=dict)
    files: list[FileRecord] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    closed: bool = False
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def usernames(self) -> list[str]:
        return list(self.members.keys())

    def username_claimed(self, username: str) -> bool:
        """True if a member or an unredeemed invite already holds ``username``."""
        if username in self.members:
            return True
        return username in self.pending_invites.values()

    def member_by_token(self, token: str) -> Member | None:
        for member in self.members.values():
            if member.upload_token == token:
                return member
        return None

    def token_in_use(self, token: str) -> bool:
        return self.member_by_token(token) is not None


class RoomDirectory:
    """Owns the room table. Mutated only by the membership and upload layers."""

    def __init__(self, ids: IdGenerator, storage: RoomStorage) -> None:
        self.ids = ids
        self.storage = storage
        self.log = logging.getLogger("rfsd.rooms")
        self._rooms: dict[str, Room] = {}
        self._torn_down = 0
        self._lock = threading.Lock()

    def create_room(self, creator_username: str) -> tuple[str, str]:
        """Create a room with one pending invite for its creator.

        Returns (room_id, connection_code).
        """
        with self._lock:
            room_id = self.ids.room_id()
            attempts = 1
            while room_id in self._rooms:
                room_id = self.ids.room_id()
                attempts += 1
            room = Room(id=room_id)
            code = self.ids.opaque_id()
            room.pending_invites[code] = creator_username
            self._rooms[room_id] = room

        if attempts > 1:
            self.log.debug("Room id collision resolved room=%s attempts=%s", room_id, attempts)

        try:
            self.storage.ensure_room_storage(room_id)
        except OSError:
            with self._lock:
                if self._rooms.get(room_id) is room:
                    self._rooms.pop(room_id, None)
            raise

        self.log.info("Room created room=%s creator=%r", room_id, creator_username)
        return room_id, code

    def get_room(self, room_id: str | None) -> Room | None:
        if not room_id:
            return None
        with self._lock:
            return self._rooms.get(room_id)

    def require_room(self, room_id: str | None) -> Room:
        room = self.get_room(room_id)
        if room is None:
            raise RoomNotFound(room_id)
        return room

    def has_room(self, room_id: str | None) -> bool:
        return self.get_room(room_id) is not None

    def delete_room(self, room_id: str) -> bool:
        """Drop a room and its storage. A room already gone is a no-op."""
        with self._lock:
            room = self._rooms.pop(room_id, None)
            if room is not None:
                self._torn_down += 1

        if room is None:
            self.log.debug("Teardown of missing room ignored room=%s", room_id)
            return False

        try:
            self.storage.destroy_room_storage(room_id)
        except OSError as e:
            self.log.warning("Room storage removal failed room=%s err=%s", room_id, e)

        self.log.info("Room deleted room=%s files=%s", room_id, len(room.files))
        return True

    def room_ids(self) -> list[str]:
        with self._lock:
            return list(self._rooms.keys())

    def clear_all(self) -> None:
        """Forget all rooms. Called during hub shutdown."""
        with self._lock:
            self._rooms.clear()

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            rooms = list(self._rooms.values())
            torn_down = self._torn_down
        memberships = sum(len(r.members) for r in rooms)
        pending = sum(len(r.pending_invites) for r in rooms)
        files = sum(len(r.files) for r in rooms)
        top_rooms = sorted(
            ((r.id, len(r.members)) for r in rooms),
            key=lambda x: (-x[1], x[0]),
        )[:5]
        return {
            "rooms_total": len(rooms),
            "memberships": memberships,
            "pending_invites": pending,
            "files": files,
            "top_rooms": top_rooms,
            "rooms_torn_down": torn_down,
        }
