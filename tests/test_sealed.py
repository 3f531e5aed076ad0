# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: NaCl-box; NaCl-secretbox

import base64
import json

import pytest
from nacl.public import Box, PrivateKey, PublicKey

from dechat.utils.errors import DecryptFailure
from dechat.wallet.identity import generate_identity
from dechat.wallet.sealed import (decrypt_dm, derive_shared_key, encrypt_dm, open_group,
                                  random_key, seal_group)


def test_shared_key_is_symmetric_and_matches_box():
    a, b = generate_identity(), generate_identity()
    k_ab = derive_shared_key(a.secret_key, b.public_key)
    k_ba = derive_shared_key(b.secret_key, a.public_key)
    assert k_ab == k_ba
    assert len(k_ab) == 32
    assert k_ab == Box(PrivateKey(a.secret_key), PublicKey(b.public_key)).shared_key()


def test_dm_round_trip():
    a, b = generate_identity(), generate_identity()
    ser = encrypt_dm(a.secret_key, b.public_key, "olá, bob")
    assert decrypt_dm(b.secret_key, a.public_key, ser) == "olá, bob"


def test_sealed_form_is_nonce_and_body():
    a, b = generate_identity(), generate_identity()
    obj = json.loads(encrypt_dm(a.secret_key, b.public_key, "hi"))
    assert set(obj) == {"n", "b"}
    assert len(base64.b64decode(obj["n"])) == 24
    # 16-byte MAC in front of the ciphertext
    assert len(base64.b64decode(obj["b"])) == 16 + 2


def test_nonces_are_fresh():
    key = random_key()
    assert json.loads(seal_group(key, "x"))["n"] != json.loads(seal_group(key, "x"))["n"]


def test_dm_from_wrong_sender_fails():
    a, b, c = generate_identity(), generate_identity(), generate_identity()
    ser = encrypt_dm(a.secret_key, b.public_key, "secret")
    with pytest.raises(DecryptFailure):
        decrypt_dm(b.secret_key, c.public_key, ser)


def test_tampered_body_fails():
    key = random_key()
    obj = json.loads(seal_group(key, "hello"))
    raw = bytearray(base64.b64decode(obj["b"]))
    raw[-1] ^= 0x01
    obj["b"] = base64.b64encode(bytes(raw)).decode()
    with pytest.raises(DecryptFailure):
        open_group(key, json.dumps(obj))


def test_group_round_trip_and_wrong_key():
    key = random_key()
    ser = seal_group(key, "to the room")
    assert open_group(key, ser) == "to the room"
    with pytest.raises(DecryptFailure):
        open_group(random_key(), ser)


@pytest.mark.parametrize("ser", [
    "garbage",
    "[1, 2]",
    json.dumps({"n": "!!", "b": "AAAA"}),
    json.dumps({"n": base64.b64encode(b"short").decode(), "b": "AAAA"}),
    json.dumps({"b": "AAAA"}),
])
def test_malformed_ciphertext_is_decrypt_failure(ser):
    with pytest.raises(DecryptFailure):
        open_group(random_key(), ser)


def test_dm_with_unusable_key_material():
    a = generate_identity()
    with pytest.raises(DecryptFailure):
        decrypt_dm(a.secret_key, b"\x00" * 5, "{}")
