"""Packet dispatch against a hub that never starts Reticulum."""

import hashlib
import os

import pytest

from conftest import EventRecorder
from rfsd.config import HubRuntimeConfig
from rfsd.constants import (
    B_CONNECT_CODE,
    B_ERR_KIND,
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
    T_ERROR,
    T_INVITE,
    T_JOIN_REQUEST,
    T_LEAVE,
    T_PING,
    T_PONG,
    T_ROOM_DATA,
    T_UPLOAD,
    T_USERNAME_TAKEN,
)
from rfsd.envelope import encode, make_envelope
from rfsd.service import HubService


class FakeLink:
    def __init__(self, n: int) -> None:
        self.link_id = bytes([n]) * 16


@pytest.fixture
def hub(tmp_path):
    svc = HubService(HubRuntimeConfig(uploads_dir=str(tmp_path / "uploads"), max_upload_bytes=1000))
    svc.storage.clear_all()
    svc.events = EventRecorder()
    svc.core.broadcaster.deliver = svc.events
    return svc


def _open(hub, n: int) -> FakeLink:
    link = FakeLink(n)
    hub.session_manager.on_link_established(link)
    hub.resource_manager.on_link_established(link)
    return link


def _route(hub, link, msg_type, *, room=None, body=None) -> list[dict]:
    outgoing: list = []
    hub.router.route_packet(link, encode(make_envelope(msg_type, room=room, body=body)), outgoing)
    assert all(out_link is link for out_link, _ in outgoing)
    return [env for _, env in outgoing]


def _create_and_connect(hub, link, username="alice") -> dict:
    (invite,) = _route(hub, link, T_CREATE, body={B_USERNAME: username})
    body = invite[K_BODY]
    (room_data,) = _route(
        hub, link, T_CONNECT, room=body[B_INVITE_ROOM], body={B_CONNECT_CODE: body[B_INVITE_CODE]}
    )
    assert room_data[K_T] == T_ROOM_DATA
    return room_data[K_BODY]


def test_create_replies_with_invite(hub) -> None:
    link = _open(hub, 1)
    (env,) = _route(hub, link, T_CREATE, body={B_USERNAME: "alice"})

    assert env[K_T] == T_INVITE
    body = env[K_BODY]
    assert body[B_INVITE_USERNAME] == "alice"
    assert env[K_ROOM] == body[B_INVITE_ROOM]
    assert hub.core.room_exists(body[B_INVITE_ROOM])
    assert hub.stats_manager.get("rooms_created") == 1


def test_connect_binds_session_and_returns_room_data(hub) -> None:
    link = _open(hub, 1)
    data = _create_and_connect(hub, link)

    assert data["username"] == "alice"
    assert data["users"] == ["alice"]
    assert data["files"] == []
    assert data["upload_token"]
    assert hub.session_manager.binding(link) == (data["id"], "alice")
    assert hub.events.for_session(link) == [("new-user", "alice")]


def test_second_connect_on_bound_link_is_refused(hub) -> None:
    link = _open(hub, 1)
    data = _create_and_connect(hub, link)
    (invite,) = _route(hub, link, T_JOIN_REQUEST, room=data["id"], body={B_USERNAME: "bob"})

    (err,) = _route(
        hub,
        link,
        T_CONNECT,
        room=data["id"],
        body={B_CONNECT_CODE: invite[K_BODY][B_INVITE_CODE]},
    )
    assert err[K_T] == T_ERROR
    assert err[K_BODY][B_ERR_KIND] == "already_connected"


def test_username_taken_sends_event_and_error(hub) -> None:
    link = _open(hub, 1)
    data = _create_and_connect(hub, link)
    other = _open(hub, 2)

    envs = _route(hub, other, T_JOIN_REQUEST, room=data["id"], body={B_USERNAME: "alice"})

    assert [e[K_T] for e in envs] == [T_USERNAME_TAKEN, T_ERROR]
    assert envs[1][K_BODY][B_ERR_KIND] == "username_taken"


def test_room_errors_become_error_envelopes(hub) -> None:
    link = _open(hub, 1)

    (err,) = _route(hub, link, T_JOIN_REQUEST, room="NOPE", body={B_USERNAME: "bob"})
    assert err[K_BODY][B_ERR_KIND] == "room_not_found"

    (err,) = _route(hub, link, T_CREATE, body={B_USERNAME: ""})
    assert err[K_BODY][B_ERR_KIND] == "invalid_username"


def test_bad_packet_is_counted_and_answered(hub) -> None:
    link = _open(hub, 1)
    outgoing: list = []
    hub.router.route_packet(link, b"\xff\x00garbage", outgoing)

    assert len(outgoing) == 1
    assert outgoing[0][1][K_BODY][B_ERR_KIND] == "bad_message"
    assert hub.stats_manager.get("pkts_bad") == 1


def test_packets_from_unknown_links_are_dropped(hub) -> None:
    assert _route(hub, FakeLink(9), T_PING) == []


def test_ping_pong(hub) -> None:
    link = _open(hub, 1)
    (env,) = _route(hub, link, T_PING, body=b"nonce")
    assert env[K_T] == T_PONG
    assert env[K_BODY] == b"nonce"


def test_leave_disconnects_and_tears_down(hub) -> None:
    link = _open(hub, 1)
    data = _create_and_connect(hub, link)

    assert _route(hub, link, T_LEAVE) == []
    assert hub.session_manager.binding(link) == (None, None)
    assert not hub.core.room_exists(data["id"])
    assert hub.stats_manager.get("disconnects") == 1


def test_link_close_notifies_remaining_member(hub) -> None:
    a = _open(hub, 1)
    data = _create_and_connect(hub, a)
    b = _open(hub, 2)
    (invite,) = _route(hub, b, T_JOIN_REQUEST, room=data["id"], body={B_USERNAME: "bob"})
    _route(hub, b, T_CONNECT, room=data["id"], body={B_CONNECT_CODE: invite[K_BODY][B_INVITE_CODE]})
    hub.events.clear()

    peer, room_id, username = hub.session_manager.on_link_closed(a)

    assert (room_id, username) == (data["id"], "alice")
    assert hub.events.for_session(b) == [("user-disconnected", "alice")]
    assert hub.core.room_exists(data["id"])


def _upload_body(token, size=5, name="a.txt", sha=None) -> dict:
    body = {B_UP_ID: os.urandom(8), B_UP_TOKEN: token, B_UP_NAME: name, B_UP_SIZE: size}
    if sha is not None:
        body[B_UP_SHA256] = sha
    return body


def test_upload_announcement_checks(hub) -> None:
    link = _open(hub, 1)
    data = _create_and_connect(hub, link)
    room = data["id"]
    token = data["upload_token"]

    (err,) = _route(hub, link, T_UPLOAD, room=room, body=_upload_body(token, size=0))
    assert err[K_BODY][B_ERR_KIND] == "no_file"

    (err,) = _route(hub, link, T_UPLOAD, room=room, body=_upload_body(token, size=5000))
    assert err[K_BODY][B_ERR_KIND] == "too_large"

    (err,) = _route(hub, link, T_UPLOAD, room=room, body=_upload_body(None))
    assert err[K_BODY][B_ERR_KIND] == "missing_token"

    (err,) = _route(hub, link, T_UPLOAD, room=room, body=_upload_body("0" * 32))
    assert err[K_BODY][B_ERR_KIND] == "invalid_token"

    sha = hashlib.sha256(b"hello").digest()
    assert _route(hub, link, T_UPLOAD, room=room, body=_upload_body(token, sha=sha)) == []
    exp = hub.resource_manager._match_expectation(link, rid=None, size=5, sha256=sha)
    assert exp is not None
    assert exp.uploader == "alice"


def test_stats_line_reflects_activity(hub) -> None:
    link = _open(hub, 1)
    _create_and_connect(hub, link)

    line = hub.stats_manager.format_stats()

    assert line.startswith("rfsd ")
    assert "links=1 members=1" in line
    assert "rooms=1 torn_down=0" in line
    assert "created=1 invites=0 joins=1" in line
