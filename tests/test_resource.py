"""Tests for upload expectations and resource hand-off."""

import hashlib
import io
import os
from dataclasses import replace

import pytest
import RNS

from rfsd.config import HubRuntimeConfig
from rfsd.constants import (
    B_CONNECT_CODE,
    B_ERR_KIND,
    B_INVITE_CODE,
    B_INVITE_ROOM,
    B_UPLOADED_ID,
    B_UPLOADED_PATH,
    B_USERNAME,
    K_BODY,
    K_T,
    T_CONNECT,
    T_CREATE,
    T_ERROR,
    T_UPLOADED,
)
from rfsd.envelope import decode, encode, make_envelope
from rfsd.resources import _advertised_size
from rfsd.service import HubService


class FakeLink:
    MDU = 4096

    def __init__(self, n: int) -> None:
        self.link_id = bytes([n]) * 16


class FakeResource:
    def __init__(self, payload: bytes, status=None) -> None:
        self.data = io.BytesIO(payload)
        self.total_size = len(payload)
        self.status = RNS.Resource.COMPLETE if status is None else status


@pytest.fixture
def sent(monkeypatch):
    packets: list[tuple[FakeLink, dict]] = []

    class FakePacket:
        def __init__(self, link, payload) -> None:
            self.link = link
            self.payload = payload

        def send(self) -> None:
            packets.append((self.link, decode(self.payload)))

    monkeypatch.setattr(RNS, "Packet", FakePacket)
    return packets


@pytest.fixture
def hub(tmp_path, sent):
    svc = HubService(
        HubRuntimeConfig(
            uploads_dir=str(tmp_path / "uploads"),
            max_upload_bytes=1000,
            max_pending_uploads=2,
        )
    )
    svc.storage.clear_all()
    return svc


def _member(hub, n: int = 1):
    link = FakeLink(n)
    hub.session_manager.on_link_established(link)
    hub.resource_manager.on_link_established(link)

    out: list = []
    hub.router.route_packet(
        link, encode(make_envelope(T_CREATE, body={B_USERNAME: "alice"})), out
    )
    invite = out[0][1][K_BODY]
    out.clear()
    hub.router.route_packet(
        link,
        encode(
            make_envelope(
                T_CONNECT,
                room=invite[B_INVITE_ROOM],
                body={B_CONNECT_CODE: invite[B_INVITE_CODE]},
            )
        ),
        out,
    )
    return link, invite[B_INVITE_ROOM], out[0][1][K_BODY]["upload_token"]


def _expect(hub, link, room, token, payload: bytes, *, sha=True) -> bytes:
    rid = os.urandom(8)
    assert hub.resource_manager.add_upload_expectation(
        link,
        rid=rid,
        room=room,
        token=token,
        name="notes.txt",
        size=len(payload),
        sha256=hashlib.sha256(payload).digest() if sha else None,
        uploader="alice",
    )
    return rid


def test_advertised_size_reads_known_attributes() -> None:
    class Adv:
        d = 123

    class Res:
        total_size = 9

    assert _advertised_size(Adv()) == 123
    assert _advertised_size(Res()) == 9
    assert _advertised_size(object()) is None


def test_pending_upload_limit(hub) -> None:
    link, room, token = _member(hub)
    _expect(hub, link, room, token, b"one")
    _expect(hub, link, room, token, b"two")

    assert not hub.resource_manager.add_upload_expectation(
        link,
        rid=b"x" * 8,
        room=room,
        token=token,
        name="three.txt",
        size=5,
        sha256=None,
        uploader="alice",
    )


def test_expectations_expire(hub) -> None:
    link, room, token = _member(hub)
    hub.config = replace(hub.config, upload_expectation_ttl_s=0.0)
    _expect(hub, link, room, token, b"data")

    hub.resource_manager.cleanup_all_expired_expectations()

    assert hub.resource_manager._match_expectation(link, rid=None, size=4, sha256=None) is None


def test_advertisement_needs_matching_expectation(hub) -> None:
    link, room, token = _member(hub)

    class Adv:
        d = 5

    assert hub.resource_manager._resource_advertised(link, Adv()) is False
    _expect(hub, link, room, token, b"hello")
    assert hub.resource_manager._resource_advertised(link, Adv()) is True

    class Huge:
        d = 5000

    assert hub.resource_manager._resource_advertised(link, Huge()) is False
    assert hub.stats_manager.get("uploads_rejected") == 2


def test_completed_resource_is_stored_and_acknowledged(hub, sent) -> None:
    link, room, token = _member(hub)
    rid = _expect(hub, link, room, token, b"hello")

    hub.resource_manager._resource_concluded(link, FakeResource(b"hello"))

    files = hub.core.directory.require_room(room).files
    assert len(files) == 1
    assert files[0].uploader == "alice"
    assert hub.storage.read_file(room, files[0].path) == b"hello"

    acks = [env for _, env in sent if env[K_T] == T_UPLOADED]
    assert len(acks) == 1
    assert acks[0][K_BODY][B_UPLOADED_ID] == rid
    assert acks[0][K_BODY][B_UPLOADED_PATH] == files[0].path
    assert hub.stats_manager.get("uploads") == 1


def test_sha256_mismatch_is_rejected(hub, sent) -> None:
    link, room, token = _member(hub)
    _expect(hub, link, room, token, b"hello")

    hub.resource_manager._resource_concluded(link, FakeResource(b"HELLO"))

    assert hub.core.directory.require_room(room).files == []
    assert hub.stats_manager.get("uploads_rejected") == 1


def test_upload_after_disconnect_reports_error(hub, sent) -> None:
    link, room, token = _member(hub)
    _expect(hub, link, room, token, b"hello", sha=False)

    # A second member keeps the room alive after alice leaves.
    bob = hub.core.join_request(room, "bob")
    keep = FakeLink(2)
    hub.core.connect(room, bob.code, keep)
    hub.core.disconnect(room, "alice")

    hub.resource_manager._resource_concluded(link, FakeResource(b"hello"))

    errors = [env for _, env in sent if env[K_T] == T_ERROR]
    assert [e[K_BODY][B_ERR_KIND] for e in errors] == ["invalid_token"]
    assert hub.core.directory.require_room(room).files == []


def test_failed_transfer_is_ignored(hub, sent) -> None:
    link, room, token = _member(hub)
    _expect(hub, link, room, token, b"hello")

    hub.resource_manager._resource_concluded(
        link, FakeResource(b"hello", status=RNS.Resource.FAILED)
    )

    assert hub.core.directory.require_room(room).files == []
    assert not [env for _, env in sent if env[K_T] == T_UPLOADED]
