# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: RFC8259-JSON; RFC7914-scrypt; NIST-SP800-38D

"""Local backup of the identity and the pinned contact book.

File shape (version 1, pretty-printed with 2-space indent)::

    {"version": 1,
     "identity": {"publicKey": "<b64>", "secretKey": "<b64>"},
     "contacts": {"pk_XXXXXXXXXX": "<b64>", ...}}

Room state (members, pending, keys) is not part of a backup. A restored
identity is re-admitted to rooms by their owners like any other joiner.
"""

import json, os
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

# ---------------- Local Project ----------------
from ..storage.kv import KVStore
from ..utils import config as CFG
from ..utils.errors import BackupError, StoreCorrupted
from ..utils.helpers import compact_dumps, try_b64decode
from .identity import TrustStore, fingerprint

# ---------------- Logger ----------------
from ..utils.dechat_logging import get_ctx_logger
log = get_ctx_logger("dechat.wallet(backup)")

RESTORE_MODES = ("merge", "replace")


# -----------------------------
# PASSPHRASE SEALING (optional)
# -----------------------------
def _derive_key(password: str, salt: bytes, n: int = CFG.BACKUP_SCRYPT_N, r: int = 8, p: int = 1) -> bytes:
    return Scrypt(salt=salt, length=32, n=n, r=r, p=p).derive(password.encode("utf-8"))


def seal_backup(text: str, password: str) -> str:
    """Wrap a backup in scrypt + AES-GCM. The outer object keeps ``version`` readable."""
    if not password:
        raise BackupError("password required")
    salt, nonce = os.urandom(16), os.urandom(12)
    ct = AESGCM(_derive_key(password, salt)).encrypt(nonce, text.encode("utf-8"), None)
    sealed = {"alg": "AESGCM", "kdf": "scrypt", "salt": salt.hex(), "nonce": nonce.hex(), "ct": ct.hex(),
              "n": CFG.BACKUP_SCRYPT_N, "r": 8, "p": 1}
    return json.dumps({"version": CFG.BACKUP_VERSION, "sealed": sealed}, indent=2)


def is_sealed(text: str) -> bool:
    try:
        obj = json.loads(text)
    except (TypeError, ValueError):
        return False
    return isinstance(obj, dict) and isinstance(obj.get("sealed"), dict)


def open_backup(text: str, password: Optional[str]) -> str:
    """Return the plain backup text. Unsealed input is passed through."""
    if not is_sealed(text):
        return text
    if not password:
        raise BackupError("backup is sealed, password required")
    enc = json.loads(text)["sealed"]
    if str(enc.get("alg")).upper() != "AESGCM" or str(enc.get("kdf")).lower() != "scrypt":
        raise BackupError("unsupported backup sealing", {"alg": enc.get("alg"), "kdf": enc.get("kdf")})
    try:
        key = _derive_key(password, bytes.fromhex(enc["salt"]),
                          n=int(enc.get("n", CFG.BACKUP_SCRYPT_N)), r=int(enc.get("r", 8)), p=int(enc.get("p", 1)))
        plain = AESGCM(key).decrypt(bytes.fromhex(enc["nonce"]), bytes.fromhex(enc["ct"]), None)
    except InvalidTag as exc:
        raise BackupError("wrong password or damaged backup") from exc
    except (KeyError, TypeError, ValueError) as exc:
        raise BackupError("sealed backup is malformed") from exc
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise BackupError("sealed backup is not UTF-8") from exc


def make_backup(store: KVStore) -> str:
    raw_id = store.get(CFG.SK_IDENTITY)
    raw_contacts = store.get(CFG.SK_CONTACTS) or "{}"
    try:
        identity = json.loads(raw_id) if raw_id else {"publicKey": "", "secretKey": ""}
        contacts = json.loads(raw_contacts)
    except ValueError as exc:
        raise StoreCorrupted("local identity or contacts are unreadable") from exc
    if not isinstance(identity, dict) or not isinstance(contacts, dict):
        raise StoreCorrupted("local identity or contacts have the wrong shape")
    payload = {
        "version": CFG.BACKUP_VERSION,
        "identity": {"publicKey": identity.get("publicKey", ""), "secretKey": identity.get("secretKey", "")},
        "contacts": contacts,
    }
    log.info("[make_backup] exported identity and %d contacts", len(contacts))
    return json.dumps(payload, indent=2)


def _parse(text: str) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise BackupError("backup is not valid JSON") from exc
    if not isinstance(data, dict):
        raise BackupError("backup is not an object")
    if data.get("version") != CFG.BACKUP_VERSION:
        raise BackupError("unsupported backup version", {"version": data.get("version")})
    return data


def _checked_identity(data: Dict[str, Any]) -> Optional[Dict[str, str]]:
    ident = data.get("identity")
    if ident is None:
        return None
    if not isinstance(ident, dict):
        raise BackupError("backup identity is not an object")
    pk, sk = ident.get("publicKey"), ident.get("secretKey")
    if not pk or not sk:
        return None
    record = {"publicKey": pk, "secretKey": sk}
    try:
        TrustStore._parse_identity(compact_dumps(record))
    except StoreCorrupted as exc:
        raise BackupError("backup identity is invalid", {"reason": exc.message}) from exc
    return record


def _checked_contacts(data: Dict[str, Any]) -> Dict[str, str]:
    contacts = data.get("contacts", {})
    if contacts is None:
        return {}
    if not isinstance(contacts, dict):
        raise BackupError("backup contacts are not an object")
    for fp, pk_b64 in contacts.items():
        key = try_b64decode(pk_b64)
        if not isinstance(fp, str) or key is None or len(key) != CFG.KEY_BYTES:
            raise BackupError("backup contact entry is invalid", {"fingerprint": fp})
        if fingerprint(key) != fp:
            raise BackupError("backup contact key does not match its fingerprint",
                              {"fingerprint": fp, "computed": fingerprint(key)})
    return dict(contacts)


def restore_backup(store: KVStore, text: str, mode: str = "merge",
                   password: Optional[str] = None) -> Dict[str, Any]:
    """Apply a backup to ``store``.

    Everything is validated before the store is touched, so a rejected
    backup leaves local state as it was. ``replace`` wipes the store, then
    writes the backup. ``merge`` adds the backup's contacts to the local ones;
    a local pin is never replaced; a differing backup key is skipped and listed
    under ``conflicts``. The identity is written only if the backup carries both keys.
    A sealed backup needs ``password``. Callers holding a ``TrustStore``
    must ``reload()`` it afterwards.
    """
    if mode not in RESTORE_MODES:
        raise BackupError("unknown restore mode", {"mode": mode})
    data = _parse(open_backup(text, password))
    identity = _checked_identity(data)
    contacts = _checked_contacts(data)

    conflicts = []
    if mode == "replace":
        wiped = store.clear()
        log.warning("[restore_backup] replace: wiped %d local keys", wiped)
        merged = contacts
    else:
        try:
            current = TrustStore(store).contacts()
        except StoreCorrupted:
            log.warning("[restore_backup] local contacts unreadable, taking backup contacts only")
            current = {}
        merged = dict(current)
        for fp, pk_b64 in contacts.items():
            pinned = current.get(fp)
            if pinned is not None and pinned != pk_b64:
                conflicts.append(fp)
                continue
            merged[fp] = pk_b64
        if conflicts:
            log.warning("[restore_backup] kept local pins for %d contacts with differing backup keys: %s",
                        len(conflicts), ", ".join(sorted(conflicts)))

    if identity is not None:
        store.put(CFG.SK_IDENTITY, compact_dumps(identity))
    store.put(CFG.SK_CONTACTS, compact_dumps(merged))
    log.info("[restore_backup] mode=%s identity=%s contacts=%d", mode, identity is not None, len(merged))
    return {"mode": mode, "identity": identity is not None, "contacts": len(merged),
            "conflicts": sorted(conflicts)}
