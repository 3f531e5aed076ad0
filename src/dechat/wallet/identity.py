# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: RFC7748-X25519; TOFU

from __future__ import annotations

import json, threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from nacl.public import PrivateKey

# ---------------- Local Project ----------------
from ..storage.kv import KVStore
from ..utils import config as CFG
from ..utils.errors import StoreCorrupted
from ..utils.helpers import b64encode, b64decode, try_b64decode, compact_dumps

# ---------------- Logger ----------------
from ..utils.dechat_logging import get_ctx_logger
log = get_ctx_logger("dechat.wallet(identity)")


@dataclass(frozen=True)
class Identity:
    public_key: bytes
    secret_key: bytes

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.public_key)

    def to_record(self) -> Dict[str, str]:
        return {"publicKey": b64encode(self.public_key), "secretKey": b64encode(self.secret_key)}

    def __repr__(self) -> str:
        return f"Identity(fingerprint={self.fingerprint!r})"


class ContactStatus(str, Enum):
    ADDED = "added"
    EXISTS = "exists"
    MISMATCH = "mismatch"


def fingerprint(public_key: bytes) -> str:
    return CFG.FINGERPRINT_PREFIX + b64encode(public_key)[: CFG.FINGERPRINT_B64_CHARS]


def generate_identity() -> Identity:
    sk = PrivateKey.generate()
    return Identity(public_key=bytes(sk.public_key), secret_key=bytes(sk))


class TrustStore:
    """Local identity plus the pinned-key address book (trust on first use).

    A fingerprint is bound to at most one public key for the life of the
    store. Read-modify-write on the contact map runs under one lock so two
    handshakes racing for the same fingerprint cannot both pin.
    """

    def __init__(self, store: KVStore):
        self.store = store
        self._lock = threading.RLock()
        self._identity: Optional[Identity] = None

    # ---------- identity ----------
    def get_or_create_identity(self) -> Identity:
        with self._lock:
            if self._identity is not None:
                return self._identity
            raw = self.store.get(CFG.SK_IDENTITY)
            if raw:
                self._identity = self._parse_identity(raw)
                log.debug("[get_or_create_identity] loaded %s", self._identity.fingerprint)
                return self._identity
            ident = generate_identity()
            self.store.put(CFG.SK_IDENTITY, compact_dumps(ident.to_record()))
            self._identity = ident
            log.info("[get_or_create_identity] created new identity %s", ident.fingerprint)
            return ident

    @staticmethod
    def _parse_identity(raw: str) -> Identity:
        try:
            obj = json.loads(raw)
            pk = b64decode(obj["publicKey"])
            sk = b64decode(obj["secretKey"])
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise StoreCorrupted("stored identity is unreadable") from exc
        if len(pk) != CFG.KEY_BYTES or len(sk) != CFG.KEY_BYTES:
            raise StoreCorrupted("stored identity has wrong key length")
        if bytes(PrivateKey(sk).public_key) != pk:
            raise StoreCorrupted("stored identity public key does not match secret key")
        return Identity(public_key=pk, secret_key=sk)

    def reload(self) -> Identity:
        """Drop the cached identity (after a backup restore) and read it again."""
        with self._lock:
            self._identity = None
            return self.get_or_create_identity()

    # ---------- contacts ----------
    def _load_contacts(self) -> Dict[str, str]:
        raw = self.store.get(CFG.SK_CONTACTS)
        if not raw:
            return {}
        try:
            obj = json.loads(raw)
        except ValueError as exc:
            raise StoreCorrupted("stored contacts are unreadable") from exc
        if not isinstance(obj, dict):
            raise StoreCorrupted("stored contacts are not a mapping")
        return {str(k): str(v) for k, v in obj.items()}

    def _save_contacts(self, contacts: Dict[str, str]) -> None:
        self.store.put(CFG.SK_CONTACTS, compact_dumps(contacts))

    def contacts(self) -> Dict[str, str]:
        with self._lock:
            return self._load_contacts()

    def list_contacts(self) -> List[str]:
        return sorted(self.contacts())

    def get_pinned_public_key(self, fp: str) -> Optional[bytes]:
        with self._lock:
            pk_b64 = self._load_contacts().get(fp)
        if not pk_b64:
            return None
        return try_b64decode(pk_b64)

    def add_or_verify_contact(self, claimed_fp: str, public_key: bytes) -> ContactStatus:
        if not isinstance(public_key, (bytes, bytearray)) or len(public_key) != CFG.KEY_BYTES:
            log.warning("[add_or_verify_contact] %s sent a key of invalid size", claimed_fp, extra={"peer": claimed_fp})
            return ContactStatus.MISMATCH
        public_key = bytes(public_key)
        calc = fingerprint(public_key)
        if calc != claimed_fp:
            log.warning("[add_or_verify_contact] claimed %s but key hashes to %s", claimed_fp, calc,
                        extra={"peer": claimed_fp})
            return ContactStatus.MISMATCH
        pk_b64 = b64encode(public_key)
        with self._lock:
            contacts = self._load_contacts()
            pinned = contacts.get(claimed_fp)
            if pinned is None:
                contacts[claimed_fp] = pk_b64
                self._save_contacts(contacts)
                log.info("[add_or_verify_contact] pinned %s", claimed_fp, extra={"peer": claimed_fp})
                return ContactStatus.ADDED
        if pinned != pk_b64:
            log.warning("[add_or_verify_contact] %s presented a different key than the pinned one",
                        claimed_fp, extra={"peer": claimed_fp})
            return ContactStatus.MISMATCH
        return ContactStatus.EXISTS
