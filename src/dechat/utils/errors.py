# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: see REFERENCES.md

"""Exception hierarchy for Dechat.

Every protocol error is scoped to one message or one local operation. Only
``StoreCorrupted`` is allowed to stop a session from starting.
"""

from __future__ import annotations

from typing import Any


class DechatError(Exception):
    """Base class for all Dechat errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class TrustMismatch(DechatError):
    """A (fingerprint, public key) claim disagrees with the pin or with the recomputed fingerprint.

    Never resolved automatically: the caller must surface it.
    """

    def __init__(self, message: str, fingerprint: str | None = None):
        super().__init__(message, {"fingerprint": fingerprint} if fingerprint else None)
        self.fingerprint = fingerprint


class UnknownPeer(DechatError):
    """No key is pinned for the fingerprint, so nothing can be sealed to it yet."""

    def __init__(self, message: str, fingerprint: str | None = None):
        super().__init__(message, {"fingerprint": fingerprint} if fingerprint else None)
        self.fingerprint = fingerprint


class DecryptFailure(DechatError):
    """Authenticated decryption failed (wrong key, tampered box, bad nonce or encoding)."""


class StaleKey(DechatError):
    """A group message names a keyId that is not the current room key."""

    def __init__(self, message: str, room: str, key_id: Any = None, current: Any = None):
        super().__init__(message, {"room": room, "keyId": key_id, "current": current})
        self.room = room
        self.key_id = key_id
        self.current = current


class NotAuthorized(DechatError):
    """An owner-only operation was attempted by a peer that is not the owner."""


class NoGroupKey(DechatError):
    """Tried to send to a room before a key was granted."""


class MalformedEnvelope(DechatError):
    """Inbound payload is not a well-formed envelope. Dropped without user-facing error."""


class StoreCorrupted(DechatError):
    """Local identity or trust store cannot be read. Fatal to session start."""


class BackupError(DechatError):
    """Backup file cannot be restored (bad JSON, shape, or unknown version)."""
