from __future__ import annotations

import os

USERNAME_MAX_CHARS = 32


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_username(value, *, max_chars: int = USERNAME_MAX_CHARS) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Usernames show up in peers' member lists and in log lines.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def fmt_token(token: str | None, *, prefix: int = 8) -> str:
    if not token:
        return "-"
    return token[:prefix]
