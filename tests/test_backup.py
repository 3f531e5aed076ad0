# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: see REFERENCES.md

import json

import pytest

from dechat.storage.kv import MemoryStore
from dechat.utils import config as CFG
from dechat.utils.errors import BackupError
from dechat.wallet.backup import is_sealed, make_backup, open_backup, restore_backup, seal_backup
from dechat.utils.helpers import b64encode
from dechat.wallet.identity import TrustStore, generate_identity


def _populated_store(n_contacts=2):
    store = MemoryStore()
    trust = TrustStore(store)
    trust.get_or_create_identity()
    peers = [generate_identity() for _ in range(n_contacts)]
    for p in peers:
        trust.add_or_verify_contact(p.fingerprint, p.public_key)
    return store, trust, peers


def test_backup_shape():
    store, trust, peers = _populated_store()
    text = make_backup(store)
    data = json.loads(text)
    assert data["version"] == 1
    assert data["identity"] == trust.get_or_create_identity().to_record()
    assert sorted(data["contacts"]) == sorted(p.fingerprint for p in peers)
    assert text.startswith('{\n  "version": 1')


def test_backup_of_empty_store_has_blank_identity():
    data = json.loads(make_backup(MemoryStore()))
    assert data["identity"] == {"publicKey": "", "secretKey": ""}
    assert data["contacts"] == {}


def test_replace_restores_identity_and_wipes_rooms():
    src, src_trust, peers = _populated_store()
    text = make_backup(src)
    dst = MemoryStore({CFG.SK_ROOM_MEMBERS_FMT.format(room="lobby"): '["pk_x"]'})
    TrustStore(dst).get_or_create_identity()
    summary = restore_backup(dst, text, mode="replace")
    assert summary == {"mode": "replace", "identity": True, "contacts": 2, "conflicts": []}
    assert dst.get(CFG.SK_ROOM_MEMBERS_FMT.format(room="lobby")) is None
    assert TrustStore(dst).get_or_create_identity() == src_trust.get_or_create_identity()


def test_merge_keeps_local_contacts_and_backup_wins():
    src, _, src_peers = _populated_store(1)
    dst, dst_trust, dst_peers = _populated_store(1)
    local_ident = dst_trust.get_or_create_identity()
    data = json.loads(make_backup(src))
    data["identity"] = {"publicKey": "", "secretKey": ""}
    restore_backup(dst, json.dumps(data), mode="merge")
    contacts = TrustStore(dst).contacts()
    assert set(contacts) == {src_peers[0].fingerprint, dst_peers[0].fingerprint}
    # identity left alone when the backup carries none
    assert TrustStore(dst).get_or_create_identity() == local_ident


@pytest.mark.parametrize("text", [
    "not json",
    "[]",
    json.dumps({"version": 2, "identity": {}, "contacts": {}}),
    json.dumps({"identity": {}, "contacts": {}}),
    json.dumps({"version": 1, "identity": "x", "contacts": {}}),
    json.dumps({"version": 1, "contacts": []}),
    json.dumps({"version": 1, "contacts": {"pk_a": "short"}}),
    json.dumps({"version": 1, "identity": {"publicKey": "AAAA", "secretKey": "AAAA"}}),
])
def test_bad_backups_raise_and_leave_store_alone(text):
    store, trust, _ = _populated_store()
    before = dict((k, store.get(k)) for k in store.keys())
    with pytest.raises(BackupError):
        restore_backup(store, text, mode="replace")
    assert dict((k, store.get(k)) for k in store.keys()) == before


def test_unknown_mode_is_rejected():
    with pytest.raises(BackupError):
        restore_backup(MemoryStore(), make_backup(MemoryStore()), mode="overwrite")


def test_sealed_backup_needs_the_password():
    src, src_trust, _ = _populated_store()
    sealed = seal_backup(make_backup(src), "hunter2")
    assert is_sealed(sealed)
    assert src_trust.get_or_create_identity().to_record()["secretKey"] not in sealed
    with pytest.raises(BackupError):
        open_backup(sealed, None)
    with pytest.raises(BackupError):
        open_backup(sealed, "wrong")
    dst = MemoryStore()
    restore_backup(dst, sealed, mode="replace", password="hunter2")
    assert TrustStore(dst).get_or_create_identity() == src_trust.get_or_create_identity()


def test_plain_backup_passes_through_open():
    text = make_backup(MemoryStore())
    assert not is_sealed(text)
    assert open_backup(text, "ignored") == text


def test_contact_with_foreign_key_is_rejected():
    real, other = generate_identity(), generate_identity()
    text = json.dumps({"version": 1, "contacts": {real.fingerprint: b64encode(other.public_key)}})
    store, trust, _ = _populated_store()
    with pytest.raises(BackupError):
        restore_backup(store, text, mode="merge")
    assert TrustStore(store).get_pinned_public_key(real.fingerprint) is None


def test_merge_never_replaces_a_pinned_key():
    peer, newcomer = generate_identity(), generate_identity()
    local_key = generate_identity().public_key
    store = MemoryStore({CFG.SK_CONTACTS: json.dumps({peer.fingerprint: b64encode(local_key)})})
    text = json.dumps({"version": 1, "contacts": {
        peer.fingerprint: b64encode(peer.public_key),
        newcomer.fingerprint: b64encode(newcomer.public_key),
    }})
    summary = restore_backup(store, text, mode="merge")
    assert summary["conflicts"] == [peer.fingerprint]
    trust = TrustStore(store)
    assert trust.get_pinned_public_key(peer.fingerprint) == local_key
    assert trust.get_pinned_public_key(newcomer.fingerprint) == newcomer.public_key


def test_merge_of_same_pins_reports_no_conflict():
    store, trust, peers = _populated_store()
    summary = restore_backup(store, make_backup(store), mode="merge")
    assert summary["conflicts"] == []
    assert summary["contacts"] == len(peers)
