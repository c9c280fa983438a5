from __future__ import annotations

import tomllib
from dataclasses import asdict, dataclass, replace
from typing import Any


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    uploads_dir: str | None = None
    dest_name: str = "rfs.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "rfs"
    username_max_chars: int = 32
    max_upload_bytes: int = 50_000_000
    max_pending_uploads: int = 4
    upload_expectation_ttl_s: float = 60.0
    stats_log_interval_s: float = 0.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

_EMPTY_MEANS_NONE = ("configdir", "uploads_dir", "log_file", "log_datefmt")


def load_toml(path: str) -> dict[str, Any]:
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: HubRuntimeConfig, data: dict[str, Any]) -> HubRuntimeConfig:
    """Overlay a parsed rfsd.toml onto ``base``.

    Keys may sit at the top level or under [hub]; [logging] keys map onto the
    log_* fields. Unknown keys are ignored.
    """
    hub = data.get("hub") if isinstance(data, dict) else None
    if isinstance(hub, dict):
        data = {**data, **hub}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped = {
            field_name: log_table.get(key)
            for key, field_name in _LOGGING_KEYS.items()
            if key in log_table
        }
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    if "announce" in data and "announce_on_start" not in updates:
        updates["announce_on_start"] = bool(data["announce"])
    for key in _EMPTY_MEANS_NONE:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(base, **updates) if updates else base
