# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: NaCl-box; NaCl-secretbox; RFC7748-X25519

"""Authenticated encryption for the two channel kinds.

Pairwise (DM): ``crypto_box_beforenm`` shared key from (my secret, their
pinned public), then XSalsa20-Poly1305 secretbox with a fresh 24-byte nonce.
Group: the same secretbox under the 32-byte room key.

Both produce the serialized form ``{"n": b64(nonce), "b": b64(mac||ct)}``,
byte-compatible with tweetnacl's ``box.before`` / ``secretbox`` output.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey
from nacl.secret import SecretBox
from nacl.utils import random as nacl_random

# ---------------- Local Project ----------------
from ..utils import config as CFG
from ..utils.errors import DecryptFailure
from ..utils.helpers import b64encode, try_b64decode, compact_dumps


@dataclass(frozen=True)
class GroupCiphertext:
    body: str
    key_id: str


def random_key() -> bytes:
    return nacl_random(CFG.KEY_BYTES)


def derive_shared_key(my_secret_key: bytes, remote_public_key: bytes) -> bytes:
    return Box(PrivateKey(my_secret_key), PublicKey(remote_public_key)).shared_key()


def _seal(key: bytes, text: str) -> str:
    nonce = nacl_random(CFG.NONCE_BYTES)
    box = SecretBox(key).encrypt(text.encode("utf-8"), nonce)
    return compact_dumps({"n": b64encode(nonce), "b": b64encode(box.ciphertext)})


def _open(key: bytes, serialized: str, what: str) -> str:
    try:
        obj = json.loads(serialized)
    except (TypeError, ValueError) as exc:
        raise DecryptFailure(f"{what}: ciphertext is not JSON") from exc
    if not isinstance(obj, dict):
        raise DecryptFailure(f"{what}: ciphertext is not an object")
    nonce = try_b64decode(obj.get("n"))
    box = try_b64decode(obj.get("b"))
    if nonce is None or box is None or len(nonce) != CFG.NONCE_BYTES:
        raise DecryptFailure(f"{what}: bad nonce or body encoding")
    try:
        out = SecretBox(key).decrypt(box, nonce)
    except CryptoError as exc:
        raise DecryptFailure(f"{what}: authentication failed") from exc
    try:
        return out.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptFailure(f"{what}: plaintext is not UTF-8") from exc


# ---------- pairwise ----------
def encrypt_dm(my_secret_key: bytes, remote_public_key: bytes, text: str) -> str:
    return _seal(derive_shared_key(my_secret_key, remote_public_key), text)


def decrypt_dm(my_secret_key: bytes, sender_public_key: bytes, serialized: str) -> str:
    try:
        shared = derive_shared_key(my_secret_key, sender_public_key)
    except (TypeError, ValueError) as exc:
        raise DecryptFailure("dm: unusable key material") from exc
    return _open(shared, serialized, "dm")


# ---------- group ----------
def seal_group(key: bytes, text: str) -> str:
    return _seal(key, text)


def open_group(key: bytes, serialized: str) -> str:
    return _open(key, serialized, "group")
