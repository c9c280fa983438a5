from __future__ import annotations

import pytest

from rfsd.core import FileShareCore
from rfsd.storage import RoomStorage


class FakeSession:
    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"FakeSession({self.name!r})"


class EventRecorder:
    """Stands in for the transport's deliver callback."""

    def __init__(self) -> None:
        self.events: list[tuple[FakeSession, str, str, object]] = []

    def __call__(self, session, room_id, event, payload) -> None:
        self.events.append((session, room_id, event, payload))

    def for_session(self, session) -> list[tuple[str, object]]:
        return [(ev, payload) for s, _, ev, payload in self.events if s is session]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def storage(tmp_path) -> RoomStorage:
    s = RoomStorage(tmp_path / "uploads")
    s.clear_all()
    return s


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def core(storage, recorder) -> FileShareCore:
    return FileShareCore(storage, deliver=recorder)
