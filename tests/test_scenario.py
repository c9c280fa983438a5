"""The alice/bob walkthrough end to end against the core."""

import pytest

from conftest import FakeSession
from rfsd.broadcast import EV_FILE_UPLOAD, EV_NEW_USER, EV_USER_DISCONNECTED
from rfsd.errors import InvalidCode, InvalidToken, RoomNotFound


def test_two_member_room_lifecycle(core, recorder, storage) -> None:
    invite = core.create_room("alice")
    room_id, c1 = invite.room_id, invite.code

    session_a = FakeSession("alice")
    snap_a = core.connect(room_id, c1, session_a)
    token_a = snap_a.upload_token
    assert snap_a.files == []
    assert snap_a.member_usernames == ["alice"]

    c2 = core.join_request(room_id, "bob").code
    session_b = FakeSession("bob")
    recorder.clear()
    snap_b = core.connect(room_id, c2, session_b)
    token_b = snap_b.upload_token
    assert token_a != token_b
    assert recorder.for_session(session_a) == [(EV_NEW_USER, "bob")]
    assert recorder.for_session(session_b) == [(EV_NEW_USER, "bob")]

    recorder.clear()
    path = core.upload(room_id, token_a, "report.pdf", b"%PDF")
    room = core.directory.require_room(room_id)
    assert [(f.name, f.uploader) for f in room.files] == [("report.pdf", "alice")]
    for session in (session_a, session_b):
        assert recorder.for_session(session) == [
            (EV_FILE_UPLOAD, {"name": "report.pdf", "path": path, "uploader": "alice"})
        ]

    recorder.clear()
    core.disconnect(room_id, "alice")
    assert recorder.for_session(session_b) == [(EV_USER_DISCONNECTED, "alice")]
    assert core.room_exists(room_id)
    with pytest.raises(InvalidToken):
        core.upload(room_id, token_a, "late.pdf", b"x")

    core.disconnect(room_id, "bob")
    assert not core.room_exists(room_id)
    assert not storage.room_dir(room_id).exists()

    # The room lookup comes first, so a consumed code on a torn down room
    # reports the missing room.
    with pytest.raises(RoomNotFound):
        core.connect(room_id, c2, FakeSession("bob"))
    with pytest.raises(RoomNotFound):
        core.upload(room_id, token_b, "x.txt", b"x")


def test_consumed_code_on_live_room_is_invalid(core) -> None:
    invite = core.create_room("alice")
    core.connect(invite.room_id, invite.code, FakeSession("alice"))
    c2 = core.join_request(invite.room_id, "bob").code
    core.connect(invite.room_id, c2, FakeSession("bob"))

    with pytest.raises(InvalidCode):
        core.connect(invite.room_id, c2, FakeSession("bob-again"))
