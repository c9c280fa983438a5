"""Live session registry and room event fan-out."""

from __future__ import annotations

import logging
import threading
import weakref
from typing import TYPE_CHECKING, Any, Callable, Iterable

if TYPE_CHECKING:
    from .rooms import RoomDirectory

EV_NEW_USER = "new-user"
EV_USER_DISCONNECTED = "user-disconnected"
EV_FILE_UPLOAD = "file-upload"
EV_ROOM_DATA = "room-data"
EV_USERNAME_TAKEN = "username-taken"

# deliver(session, room_id, event, payload)
Deliver = Callable[[Any, str, str, Any], None]


class SessionRegistry:
    """Maps (room id, username) to the transport's live session handle.

    Handles are held weakly; the transport owns the session objects.
    """

    def __init__(self) -> None:
        self._by_room: dict[str, weakref.WeakValueDictionary[str, Any]] = {}
        self._lock = threading.Lock()

    def bind(self, room_id: str, username: str, session: Any) -> None:
        with self._lock:
            bucket = self._by_room.get(room_id)
            if bucket is None:
                bucket = weakref.WeakValueDictionary()
                self._by_room[room_id] = bucket
            bucket[username] = session

    def unbind(self, room_id: str, username: str) -> Any | None:
        with self._lock:
            bucket = self._by_room.get(room_id)
            if bucket is None:
                return None
            session = bucket.pop(username, None)
            if not bucket:
                self._by_room.pop(room_id, None)
            return session

    def get(self, room_id: str, username: str) -> Any | None:
        with self._lock:
            bucket = self._by_room.get(room_id)
            return bucket.get(username) if bucket is not None else None

    def sessions_for(
        self, room_id: str, usernames: Iterable[str]
    ) -> list[tuple[str, Any]]:
        out: list[tuple[str, Any]] = []
        with self._lock:
            bucket = self._by_room.get(room_id)
            if bucket is None:
                return out
            for username in usernames:
                session = bucket.get(username)
                if session is not None:
                    out.append((username, session))
        return out

    def drop_room(self, room_id: str) -> None:
        with self._lock:
            self._by_room.pop(room_id, None)

    def clear_all(self) -> None:
        with self._lock:
            self._by_room.clear()

    def count(self) -> int:
        with self._lock:
            return sum(len(b) for b in self._by_room.values())


class EventBroadcaster:
    """Delivers room events to every connected member of a room.

    Delivery is fire and forget: a failing session is logged and skipped.
    """

    def __init__(
        self,
        directory: RoomDirectory,
        sessions: SessionRegistry,
        deliver: Deliver | None = None,
    ) -> None:
        self.directory = directory
        self.sessions = sessions
        self.deliver = deliver
        self.log = logging.getLogger("rfsd.broadcast")

    def broadcast(
        self,
        room_id: str,
        event: str,
        payload: Any,
        *,
        recipients: Iterable[str] | None = None,
    ) -> int:
        """Send ``event`` to the room. Returns the number of sessions reached.

        ``recipients`` is a username snapshot taken by the caller under the
        room lock; without it the current member list is read here.
        """
        if recipients is None:
            room = self.directory.get_room(room_id)
            if room is None:
                return 0
            with room.lock:
                recipients = room.usernames()

        targets = self.sessions.sessions_for(room_id, recipients)
        if self.deliver is None or not targets:
            return 0

        delivered = 0
        for username, session in targets:
            try:
                self.deliver(session, room_id, event, payload)
                delivered += 1
            except Exception:
                self.log.debug(
                    "Event delivery failed room=%s event=%s user=%r",
                    room_id,
                    event,
                    username,
                    exc_info=True,
                )

        self.log.debug(
            "Broadcast room=%s event=%s delivered=%s/%s",
            room_id,
            event,
            delivered,
            len(targets),
        )
        return delivered

