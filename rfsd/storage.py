"""Per-room file storage on the local filesystem."""

from __future__ import annotations

import logging
import os
import shutil
import time
from pathlib import Path

from .util import expand_path


def safe_file_name(name: str) -> str:
    base = os.path.basename(str(name).replace("\\", "/")).strip()
    base = base.replace("\x00", "")
    if base in ("", ".", ".."):
        return "file"
    return base


class RoomStorage:
    """Creates, fills and destroys one directory per room under ``root``."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(expand_path(str(root)))
        self.log = logging.getLogger("rfsd.storage")

    def room_dir(self, room_id: str) -> Path:
        return self.root / room_id

    def clear_all(self) -> None:
        """Wipe every room directory. Rooms do not survive a restart."""
        if self.root.exists():
            shutil.rmtree(self.root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.log.info("Uploads directory reset path=%s", self.root)

    def ensure_room_storage(self, room_id: str) -> Path:
        d = self.room_dir(room_id)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def destroy_room_storage(self, room_id: str) -> None:
        d = self.room_dir(room_id)
        if d.exists():
            shutil.rmtree(d)
            self.log.debug("Room storage removed room=%s path=%s", room_id, d)

    def persist_upload(self, room_id: str, file_name: str, data: bytes) -> str:
        """Write ``data`` into the room directory and return the stored path.

        Stored names are prefixed with the epoch milliseconds so two uploads
        with the same original name never overwrite each other. The room
        directory must already exist; a room torn down mid-upload raises
        FileNotFoundError.
        """
        d = self.room_dir(room_id)
        if not d.is_dir():
            raise FileNotFoundError(f"no storage for room {room_id}")
        stamp = int(time.time() * 1000)
        base = safe_file_name(file_name)
        target = d / f"{stamp}-{base}"
        n = 1
        while True:
            try:
                f = open(target, "xb")
            except FileExistsError:
                target = d / f"{stamp}-{n}-{base}"
                n += 1
                continue
            with f:
                f.write(data)
            return self.relative_path(target)

    def discard(self, room_id: str, path: str) -> None:
        """Remove a stored upload that was never recorded."""
        p = self.resolve(room_id, path)
        if p is None:
            return
        p.unlink(missing_ok=True)
        self.log.debug("Discarded unrecorded upload room=%s path=%s", room_id, path)

    def relative_path(self, target: Path) -> str:
        return str(Path(self.root.name) / target.relative_to(self.root)).replace(
            os.sep, "/"
        )

    def resolve(self, room_id: str, path: str) -> Path | None:
        """Map a stored path back to a file inside the room directory."""
        parts = [p for p in str(path).replace("\\", "/").split("/") if p]
        if len(parts) != 3 or parts[0] != self.root.name or parts[1] != room_id:
            return None
        if parts[2] in (".", ".."):
            return None
        p = self.room_dir(room_id) / parts[2]
        return p if p.is_file() else None

    def read_file(self, room_id: str, path: str) -> bytes | None:
        p = self.resolve(room_id, path)
        if p is None:
            return None
        with open(p, "rb") as f:
            return f.read()
