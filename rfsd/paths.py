"""Where the hub keeps its config, identity and uploads."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger("rfsd.paths")


@dataclass(frozen=True)
class RfsdHome:
    """The hub's state directory, ``~/.rfsd`` unless ``RFSD_HOME`` is set."""

    root: Path

    @classmethod
    def from_env(cls) -> RfsdHome:
        override = os.environ.get("RFSD_HOME")
        return cls(Path(override) if override else Path.home() / ".rfsd")

    @property
    def config_path(self) -> Path:
        return self.root / "rfsd.toml"

    @property
    def identity_path(self) -> Path:
        return self.root / "hub_identity"

    @property
    def uploads_dir(self) -> Path:
        return self.root / "uploads"


def restrict_mode(path: str | os.PathLike[str], mode: int) -> None:
    try:
        os.chmod(path, mode)
    except OSError as e:
        # Some filesystems ignore permission bits.
        log.debug("Could not set mode %o on %s: %s", mode, path, e)


def ensure_private_dir(path: str | os.PathLike[str]) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    restrict_mode(p, 0o700)
    return p
