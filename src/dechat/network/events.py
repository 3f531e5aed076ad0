# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: see REFERENCES.md

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

KIND_ROOM = "room"
KIND_DM   = "dm"
KIND_SYS  = "sys"

# stable codes for sys events, safe to match on in a UI
EV_CONNECTED      = "connected"
EV_JOIN_REQUEST   = "join_request"
EV_JOIN_REJECTED  = "join_rejected"
EV_JOINED         = "joined"
EV_REKEYED        = "rekeyed"
EV_TRUST_MISMATCH = "trust_mismatch"
EV_STALE_KEY      = "stale_key"
EV_DECRYPT_FAILED = "decrypt_failed"
EV_APPROVED       = "approved"
EV_REJECTED       = "rejected"
EV_KICKED         = "kicked"
EV_ROTATED        = "rotated"
EV_GRANT_SKIPPED  = "grant_skipped"
EV_MESSAGE        = "message"


@dataclass(frozen=True)
class ChatEvent:
    kind: str
    room: str
    sender: str
    text: str
    code: str = EV_MESSAGE
    key_id: Optional[str] = None
    ts: float = field(default_factory=time.time)
