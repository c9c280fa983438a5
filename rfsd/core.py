"""Transport-facing entry points for room coordination.

The hub service (or any other transport) talks to rooms only through
FileShareCore. It may ask whether a room exists, but all mutation goes through
the membership and upload layers.
"""

from __future__ import annotations

import logging
from typing import Any

from .broadcast import Deliver, EventBroadcaster, SessionRegistry
from .errors import FileNotFound
from .ids import IdGenerator
from .membership import Invite, MembershipCoordinator, RoomSnapshot
from .rooms import FileRecord, RoomDirectory
from .storage import RoomStorage
from .uploads import UploadAuthorizer
from .util import USERNAME_MAX_CHARS


class FileShareCore:
    def __init__(
        self,
        storage: RoomStorage,
        *,
        ids: IdGenerator | None = None,
        deliver: Deliver | None = None,
        username_max_chars: int = USERNAME_MAX_CHARS,
    ) -> None:
        self.log = logging.getLogger("rfsd.core")
        self.storage = storage
        self.ids = ids or IdGenerator()
        self.directory = RoomDirectory(self.ids, storage)
        self.sessions = SessionRegistry()
        self.broadcaster = EventBroadcaster(self.directory, self.sessions, deliver)
        self.membership = MembershipCoordinator(
            self.directory,
            self.sessions,
            self.broadcaster,
            self.ids,
            username_max_chars=username_max_chars,
        )
        self.uploads = UploadAuthorizer(self.directory, self.broadcaster)

    def create_room(self, username: Any) -> Invite:
        return self.membership.create_room(username)

    def join_request(self, room_id: str, username: Any) -> Invite:
        return self.membership.issue_invite(room_id, username)

    def connect(self, room_id: str, code: str | None, session: Any) -> RoomSnapshot:
        return self.membership.redeem_invite(room_id, code, session)

    def disconnect(self, room_id: str | None, username: str | None) -> bool:
        return self.membership.disconnect(room_id, username)

    def check_upload(self, room_id: str, token: str | None) -> str:
        """Pre-flight token check before a transfer is accepted."""
        return self.uploads.resolve_uploader(room_id, token)

    def upload(self, room_id: str, token: str | None, file_name: str, data: bytes) -> str:
        record = self.uploads.authorize_and_record(
            room_id,
            token,
            file_name,
            lambda: self.storage.persist_upload(room_id, file_name, data),
            lambda path: self.storage.discard(room_id, path),
        )
        return record.path

    def fetch(self, room_id: str, token: str | None, path: str) -> tuple[FileRecord, bytes]:
        record = self.uploads.resolve_download(room_id, token, path)
        data = self.storage.read_file(room_id, record.path)
        if data is None:
            raise FileNotFound(room_id)
        return record, data

    def room_exists(self, room_id: str | None) -> bool:
        return self.directory.has_room(room_id)

    def get_stats(self) -> dict[str, Any]:
        stats = self.directory.get_stats()
        stats["sessions"] = self.sessions.count()
        return stats

    def shutdown(self) -> None:
        self.sessions.clear_all()
        self.directory.clear_all()
