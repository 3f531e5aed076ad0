# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: NaCl-secretbox

from __future__ import annotations

import json, threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, Optional, Set

# ---------------- Local Project ----------------
from ..storage.kv import KVStore
from ..utils import config as CFG
from ..utils.errors import StaleKey
from ..utils.helpers import b64encode, try_b64decode, compact_dumps, next_key_id
from ..wallet.sealed import GroupCiphertext, random_key, seal_group, open_group

# ---------------- Logger ----------------
from ..utils.dechat_logging import get_ctx_logger
log = get_ctx_logger("dechat.room(membership)")


@dataclass(frozen=True)
class RoomKeyInfo:
    key_b64: str
    key_id: str

    @property
    def key(self) -> Optional[bytes]:
        return try_b64decode(self.key_b64)


def owner_of(members: Iterable[str], self_fp: str) -> str:
    return min(set(members) | {self_fp})


class RoomManager:
    """Per-room derived state: members, pending joins, current key and keyId.

    Each room has its own re-entrant lock. Every read-modify-write below takes
    it, and callers that chain several operations (handle one envelope, approve,
    kick) hold ``room_lock(room)`` around the whole sequence.
    """

    def __init__(self, store: KVStore):
        self.store = store
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ---------- locking ----------
    def _lock_for(self, room: str) -> threading.RLock:
        with self._locks_guard:
            lk = self._locks.get(room)
            if lk is None:
                lk = self._locks[room] = threading.RLock()
            return lk

    @contextmanager
    def room_lock(self, room: str) -> Iterator[None]:
        lk = self._lock_for(room)
        with lk:
            yield

    # ---------- set helpers ----------
    def _load_set(self, key: str) -> Set[str]:
        raw = self.store.get(key)
        if not raw:
            return set()
        try:
            arr = json.loads(raw)
        except ValueError:
            log.warning("[_load_set] unreadable set at %s, treating as empty", key)
            return set()
        if not isinstance(arr, list):
            return set()
        return {str(x) for x in arr}

    def _save_set(self, key: str, values: Set[str]) -> None:
        self.store.put(key, compact_dumps(sorted(values)))

    def _add_to(self, key: str, fp: str) -> bool:
        s = self._load_set(key)
        if fp in s:
            return False
        s.add(fp)
        self._save_set(key, s)
        return True

    def _remove_from(self, key: str, fp: str) -> bool:
        s = self._load_set(key)
        if fp not in s:
            return False
        s.discard(fp)
        self._save_set(key, s)
        return True

    # ---------- members / pending ----------
    def list_members(self, room: str) -> Set[str]:
        with self.room_lock(room):
            return self._load_set(CFG.SK_ROOM_MEMBERS_FMT.format(room=room))

    def add_member(self, room: str, fp: str) -> bool:
        with self.room_lock(room):
            changed = self._add_to(CFG.SK_ROOM_MEMBERS_FMT.format(room=room), fp)
        if changed:
            log.debug("[add_member] %s", fp, extra={"room": room, "peer": fp})
        return changed

    def remove_member(self, room: str, fp: str) -> bool:
        with self.room_lock(room):
            changed = self._remove_from(CFG.SK_ROOM_MEMBERS_FMT.format(room=room), fp)
        if changed:
            log.debug("[remove_member] %s", fp, extra={"room": room, "peer": fp})
        return changed

    def replace_members(self, room: str, fps: Iterable[str]) -> None:
        with self.room_lock(room):
            self._save_set(CFG.SK_ROOM_MEMBERS_FMT.format(room=room), {str(f) for f in fps})

    def is_member(self, room: str, fp: str) -> bool:
        return fp in self.list_members(room)

    def list_pending(self, room: str) -> Set[str]:
        with self.room_lock(room):
            return self._load_set(CFG.SK_ROOM_PENDING_FMT.format(room=room))

    def add_pending(self, room: str, fp: str) -> bool:
        with self.room_lock(room):
            return self._add_to(CFG.SK_ROOM_PENDING_FMT.format(room=room), fp)

    def remove_pending(self, room: str, fp: str) -> bool:
        with self.room_lock(room):
            return self._remove_from(CFG.SK_ROOM_PENDING_FMT.format(room=room), fp)

    # ---------- owner ----------
    def get_owner_fingerprint(self, room: str, self_fp: str) -> str:
        # recomputed on every call, membership may change between reads
        return owner_of(self.list_members(room), self_fp)

    def is_owner(self, room: str, self_fp: str) -> bool:
        return self.get_owner_fingerprint(room, self_fp) == self_fp

    # ---------- keys ----------
    def get_group_key(self, room: str) -> Optional[RoomKeyInfo]:
        with self.room_lock(room):
            key_b64 = self.store.get(CFG.SK_ROOM_KEY_FMT.format(room=room))
            key_id = self.store.get(CFG.SK_ROOM_KEYID_FMT.format(room=room))
        if not key_b64 or not key_id:
            return None
        return RoomKeyInfo(key_b64=key_b64, key_id=key_id)

    def get_current_key_id(self, room: str) -> Optional[str]:
        return self.store.get(CFG.SK_ROOM_KEYID_FMT.format(room=room)) or None

    def _store_key(self, room: str, key_b64: str, key_id: str) -> RoomKeyInfo:
        self.store.put(CFG.SK_ROOM_KEY_FMT.format(room=room), key_b64)
        self.store.put(CFG.SK_ROOM_KEYID_FMT.format(room=room), key_id)
        return RoomKeyInfo(key_b64=key_b64, key_id=key_id)

    def ensure_room_key(self, room: str) -> RoomKeyInfo:
        with self.room_lock(room):
            cur = self.get_group_key(room)
            if cur:
                return cur
            info = self._store_key(room, b64encode(random_key()), next_key_id(None))
        log.info("[ensure_room_key] issued keyId=%s", info.key_id, extra={"room": room})
        return info

    def set_group_key_from_owner(self, room: str, key_b64: str, key_id: str) -> RoomKeyInfo:
        with self.room_lock(room):
            info = self._store_key(room, key_b64, key_id)
        log.info("[set_group_key_from_owner] installed keyId=%s", key_id, extra={"room": room})
        return info

    def rotate_group_key(self, room: str) -> RoomKeyInfo:
        with self.room_lock(room):
            prev = self.get_current_key_id(room)
            info = self._store_key(room, b64encode(random_key()), next_key_id(prev))
        log.info("[rotate_group_key] keyId %s -> %s", prev, info.key_id, extra={"room": room})
        return info

    # ---------- group sealing ----------
    def encrypt_group(self, room: str, text: str) -> Optional[GroupCiphertext]:
        info = self.get_group_key(room)
        key = info.key if info else None
        if info is None or key is None:
            return None
        return GroupCiphertext(body=seal_group(key, text), key_id=info.key_id)

    def decrypt_group(self, room: str, serialized: str, key_id: str) -> str:
        cur = self.get_group_key(room)
        if cur is None or cur.key_id != key_id:
            raise StaleKey("unknown or outdated group key", room,
                           key_id=key_id, current=cur.key_id if cur else None)
        key = cur.key
        if key is None:
            raise StaleKey("stored group key is unreadable", room, key_id=key_id, current=cur.key_id)
        return open_group(key, serialized)

    def snapshot(self, room: str, self_fp: str) -> dict:
        with self.room_lock(room):
            members = self.list_members(room)
            return {
                "room": room,
                "owner": owner_of(members, self_fp),
                "members": sorted(members),
                "pending": sorted(self.list_pending(room)),
                "keyId": self.get_current_key_id(room),
            }
