from __future__ import annotations

import secrets

# Letters and digits that are easy to tell apart when read aloud or typed.
ROOM_ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ROOM_ID_LEN = 4


class IdGenerator:
    """Source of room ids, connection codes and upload tokens."""

    def room_id(self) -> str:
        return "".join(secrets.choice(ROOM_ID_ALPHABET) for _ in range(ROOM_ID_LEN))

    def opaque_id(self) -> str:
        return secrets.token_hex(16)
