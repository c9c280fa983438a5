"""Upload authorization and file bookkeeping."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from .broadcast import EV_FILE_UPLOAD
from .errors import FileNotFound, InvalidToken, MissingToken, RoomError, RoomNotFound
from .rooms import FileRecord
from .util import fmt_token

if TYPE_CHECKING:
    from .broadcast import EventBroadcaster
    from .rooms import Room, RoomDirectory


class UploadAuthorizer:
    """Turns an upload token into an uploader identity and records files.

    The uploader is always the owner of the token. A token dies with its
    member record at disconnect.
    """

    def __init__(self, directory: RoomDirectory, broadcaster: EventBroadcaster) -> None:
        self.directory = directory
        self.broadcaster = broadcaster
        self.log = logging.getLogger("rfsd.uploads")

    def _owner(self, room: Room, token: str) -> str:
        # Caller holds room.lock.
        if room.closed:
            raise RoomNotFound(room.id)
        member = room.member_by_token(token)
        if member is None:
            raise InvalidToken(room.id)
        return member.username

    def resolve_uploader(self, room_id: str, token: str | None) -> str:
        """Return the username owning ``token`` in ``room_id``."""
        if not token:
            raise MissingToken(room_id)
        room = self.directory.require_room(room_id)
        with room.lock:
            return self._owner(room, token)

    def authorize_and_record(
        self,
        room_id: str,
        token: str | None,
        file_name: str,
        store: Callable[[], str],
        discard: Callable[[str], None] | None = None,
    ) -> FileRecord:
        """Authorize an upload, persist it via ``store`` and record it.

        ``store`` runs outside the room lock and returns the stored path. The
        token is checked again before the record is appended; if its owner
        left meanwhile the stored file is handed to ``discard``.
        """
        uploader = self.resolve_uploader(room_id, token)
        room = self.directory.require_room(room_id)

        try:
            path = store()
        except OSError:
            with room.lock:
                if room.closed:
                    raise RoomNotFound(room_id) from None
            raise

        record = FileRecord(name=file_name, path=path, uploader=uploader)
        try:
            with room.lock:
                if self._owner(room, token) != uploader:
                    raise InvalidToken(room_id)
                room.files.append(record)
                recipients = room.usernames()
        except RoomError:
            if discard is not None:
                discard(path)
            raise

        self.log.info(
            "File recorded room=%s uploader=%r token=%s name=%r path=%s",
            room_id,
            uploader,
            fmt_token(token),
            file_name,
            path,
        )
        self.broadcaster.broadcast(
            room_id, EV_FILE_UPLOAD, record.as_dict(), recipients=recipients
        )
        return record

    def resolve_download(self, room_id: str, token: str | None, path: str) -> FileRecord:
        """Look up a recorded file on behalf of the member owning ``token``."""
        if not token:
            raise MissingToken(room_id)
        room = self.directory.require_room(room_id)
        with room.lock:
            self._owner(room, token)
            for record in room.files:
                if record.path == path:
                    return record
        raise FileNotFound(room_id)
