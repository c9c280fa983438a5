from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

import RNS

if TYPE_CHECKING:
    from .service import HubService


class SessionManager:
    """
    Tracks per-link session state for rfsd hub connections.

    A link joins at most one room. Once a CONNECT succeeds the session is
    bound to (room id, username); closing the link or sending LEAVE turns
    into a room disconnect.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rfsd.session")
        self.sessions: dict[RNS.Link, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def on_link_established(self, link: RNS.Link) -> None:
        with self._lock:
            self.sessions[link] = {
                "peer": None,
                "room": None,
                "username": None,
            }
        self.log.info("Session created link_id=%s", self.hub._fmt_link_id(link))

    def on_remote_identified(
        self, link: RNS.Link, identity: RNS.Identity | None
    ) -> bytes | None:
        if identity is None:
            return None
        with self._lock:
            sess = self.sessions.get(link)
            if sess is None:
                return None
            sess["peer"] = identity.hash
        self.log.info(
            "Remote identified peer=%s link_id=%s",
            self.hub._fmt_hash(identity.hash),
            self.hub._fmt_link_id(link),
        )
        return identity.hash

    def get_session(self, link: RNS.Link) -> dict[str, Any] | None:
        with self._lock:
            sess = self.sessions.get(link)
            return dict(sess) if sess is not None else None

    def binding(self, link: RNS.Link) -> tuple[str | None, str | None]:
        with self._lock:
            sess = self.sessions.get(link)
            if sess is None:
                return None, None
            return sess.get("room"), sess.get("username")

    def bind(self, link: RNS.Link, room_id: str, username: str) -> bool:
        with self._lock:
            sess = self.sessions.get(link)
            if sess is None:
                return False
            sess["room"] = room_id
            sess["username"] = username
            return True

    def unbind(self, link: RNS.Link) -> tuple[str | None, str | None]:
        with self._lock:
            sess = self.sessions.get(link)
            if sess is None:
                return None, None
            room_id, username = sess.get("room"), sess.get("username")
            sess["room"] = None
            sess["username"] = None
            return room_id, username

    def leave_room(self, link: RNS.Link) -> tuple[str | None, str | None]:
        """Unbind the link and disconnect it from its room."""
        room_id, username = self.unbind(link)
        if room_id and username:
            if self.hub.core.disconnect(room_id, username):
                self.hub.stats_manager.inc("disconnects")
        return room_id, username

    def on_link_closed(self, link: RNS.Link) -> tuple[bytes | None, str | None, str | None]:
        """Drop session state; returns (peer, room, username) for logging.

        The session is removed before the room disconnect so a CONNECT
        finishing concurrently sees bind() fail and undoes its own join.
        """
        with self._lock:
            sess = self.sessions.pop(link, None)
        if sess is None:
            return None, None, None

        room_id, username = sess.get("room"), sess.get("username")
        if room_id and username:
            if self.hub.core.disconnect(room_id, username):
                self.hub.stats_manager.inc("disconnects")
        return sess.get("peer"), room_id, username

    def count(self) -> int:
        with self._lock:
            return len(self.sessions)

    def clear_all(self) -> list[RNS.Link]:
        """Forget all sessions and return their links for teardown."""
        with self._lock:
            links = list(self.sessions.keys())
            self.sessions.clear()
        return links
