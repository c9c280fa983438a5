"""Failure kinds raised by room operations.

Every failure is recoverable and caller-visible. The transport maps each kind
to a rejection on the wire and never retries.
"""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    ROOM_NOT_FOUND = "room_not_found"
    USERNAME_TAKEN = "username_taken"
    INVALID_USERNAME = "invalid_username"
    INVALID_CODE = "invalid_code"
    MISSING_TOKEN = "missing_token"
    INVALID_TOKEN = "invalid_token"
    FILE_NOT_FOUND = "file_not_found"


class RoomError(ValueError):
    kind: FailureKind

    def __init__(self, room_id: str | None, text: str | None = None) -> None:
        self.room_id = room_id
        super().__init__(text or self.kind.value.replace("_", " "))


class RoomNotFound(RoomError):
    kind = FailureKind.ROOM_NOT_FOUND


class UsernameTaken(RoomError):
    kind = FailureKind.USERNAME_TAKEN


class InvalidUsername(RoomError):
    kind = FailureKind.INVALID_USERNAME


class InvalidCode(RoomError):
    kind = FailureKind.INVALID_CODE


class MissingToken(RoomError):
    kind = FailureKind.MISSING_TOKEN


class InvalidToken(RoomError):
    kind = FailureKind.INVALID_TOKEN


class FileNotFound(RoomError):
    kind = FailureKind.FILE_NOT_FOUND
