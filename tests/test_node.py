# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: NaCl-box; NaCl-secretbox; TOFU

import json
import threading

import pytest

from dechat.network import events as EV
from dechat.network.protocol import encode_envelope, make_gchat, make_hs, make_join_rej
from dechat.utils.errors import NoGroupKey, NotAuthorized, UnknownPeer
from dechat.wallet.identity import generate_identity

ROOM = "lobby"


def codes(node, code):
    return [ev for ev in list(node.events) if ev.code == code]


def texts(node, kind):
    return [ev.text for ev in list(node.events) if ev.kind == kind]


def admit(owner_session, joiner, wait_until):
    owner = owner_session.node
    assert wait_until(lambda: joiner.fingerprint in owner_session.pending())
    assert wait_until(lambda: joiner.trust.get_pinned_public_key(owner.fingerprint) is not None)
    assert owner_session.approve(joiner.fingerprint)
    assert wait_until(lambda: joiner.rooms.get_current_key_id(ROOM) == owner_session.key_id())
    assert wait_until(lambda: not joiner.is_rebroadcasting(ROOM))


def test_owner_creates_room_and_holds_key(make_nodes):
    (a,) = make_nodes(1)
    sa = a.join(ROOM, create=True)
    assert sa.has_key()
    assert sa.is_owner()
    assert sa.members() == [a.fingerprint]
    assert not a.is_rebroadcasting(ROOM)
    assert codes(a, EV.EV_CONNECTED)


def test_join_approve_and_chat(make_nodes, wait_until):
    a, b = make_nodes(2)
    sa = a.join(ROOM, create=True)
    sb = b.join(ROOM)
    assert b.is_rebroadcasting(ROOM)
    with pytest.raises(NoGroupKey):
        sb.send_group("too early")

    assert wait_until(lambda: codes(a, EV.EV_JOIN_REQUEST))
    admit(sa, b, wait_until)

    assert wait_until(lambda: codes(b, EV.EV_JOINED))
    assert sb.members() == sa.members() == sorted([a.fingerprint, b.fingerprint])
    assert sb.owner() == sa.owner() == a.fingerprint
    assert sa.pending() == []

    sa.send_group("hello from the owner")
    sb.send_group("hi back")
    assert wait_until(lambda: "hello from the owner" in texts(b, EV.KIND_ROOM))
    assert wait_until(lambda: "hi back" in texts(a, EV.KIND_ROOM))
    # no loopback
    assert "hello from the owner" not in texts(a, EV.KIND_ROOM)


def test_direct_messages(make_nodes, wait_until):
    a, b, c = make_nodes(3)
    sa = a.join(ROOM, create=True)
    sb = b.join(ROOM)
    c.join(ROOM)
    assert wait_until(lambda: b.trust.get_pinned_public_key(a.fingerprint) is not None)
    sb.send_dm(a.fingerprint, "just for you")
    assert wait_until(lambda: "just for you" in texts(a, EV.KIND_DM))
    assert "just for you" not in texts(c, EV.KIND_DM)
    with pytest.raises(UnknownPeer):
        sa.send_dm("pk_unknown00", "hello?")


def test_reject_stops_the_joiner(make_nodes, wait_until):
    a, b = make_nodes(2)
    sa = a.join(ROOM, create=True)
    sb = b.join(ROOM)
    assert wait_until(lambda: b.fingerprint in sa.pending())
    sa.reject(b.fingerprint)
    assert wait_until(lambda: codes(b, EV.EV_JOIN_REJECTED))
    assert wait_until(lambda: not b.is_rebroadcasting(ROOM))
    assert not sb.has_key()
    assert b.fingerprint not in sa.members()
    assert codes(a, EV.EV_REJECTED)


def test_kick_rotates_and_revokes(make_nodes, wait_until):
    a, b, c = make_nodes(3)
    sa = a.join(ROOM, create=True)
    sb = b.join(ROOM)
    admit(sa, b, wait_until)
    sc = c.join(ROOM)
    admit(sa, c, wait_until)
    assert wait_until(lambda: sb.members() == sa.members() == sc.members())
    old = sa.key_id()

    sa.kick(c.fingerprint)
    new = sa.key_id()
    assert int(new) > int(old)
    assert c.fingerprint not in sa.members()
    assert wait_until(lambda: sb.key_id() == new)
    assert wait_until(lambda: codes(b, EV.EV_REKEYED))
    assert sc.key_id() == old

    sa.send_group("members only")
    assert wait_until(lambda: "members only" in texts(b, EV.KIND_ROOM))
    assert wait_until(lambda: codes(c, EV.EV_STALE_KEY))
    assert "members only" not in texts(c, EV.KIND_ROOM)


def test_owner_only_operations(make_nodes, wait_until):
    a, b = make_nodes(2)
    sa = a.join(ROOM, create=True)
    sb = b.join(ROOM)
    admit(sa, b, wait_until)
    assert wait_until(lambda: sb.owner() == a.fingerprint)
    assert a.transport.hub.flush()
    sent_before = a.transport.hub.delivered
    for op in (lambda: sb.approve("pk_someone0"), lambda: sb.reject("pk_someone0"),
               lambda: sb.kick(a.fingerprint), sb.rotate_key):
        with pytest.raises(NotAuthorized):
            op()
    assert a.transport.hub.delivered == sent_before
    with pytest.raises(ValueError):
        sa.kick(a.fingerprint)


def test_rotate_key_reaches_members(make_nodes, wait_until):
    a, b = make_nodes(2)
    sa = a.join(ROOM, create=True)
    sb = b.join(ROOM)
    admit(sa, b, wait_until)
    info = sa.rotate_key()
    assert wait_until(lambda: sb.key_id() == info.key_id)
    assert codes(a, EV.EV_ROTATED)


def test_approve_without_pinned_key_skips_grant(make_nodes):
    (a,) = make_nodes(1)
    sa = a.join(ROOM, create=True)
    assert sa.approve("pk_ghost0000") is False
    assert "pk_ghost0000" in sa.members()
    assert codes(a, EV.EV_GRANT_SKIPPED)


def test_converges_when_bootstrap_messages_are_lost(make_nodes, hub, wait_until):
    budget = {"hs-ack": 2, "join-req": 1}
    lock = threading.Lock()

    def drop(topic, data, sender, receiver):
        mtype = json.loads(data)["type"]
        with lock:
            if budget.get(mtype, 0) > 0:
                budget[mtype] -= 1
                return True
        return False

    hub.drop = drop
    a, b = make_nodes(2)
    sa = a.join(ROOM, create=True)
    b.join(ROOM)
    admit(sa, b, wait_until)
    assert hub.dropped == 3
    assert wait_until(lambda: not b.is_rebroadcasting(ROOM))


def test_lost_grant_is_resent_by_approving_again(make_nodes, hub, wait_until):
    dropped = []

    def drop(topic, data, sender, receiver):
        if json.loads(data)["type"] == "room-key" and not dropped:
            dropped.append(data)
            return True
        return False

    hub.drop = drop
    a, b = make_nodes(2)
    sa = a.join(ROOM, create=True)
    sb = b.join(ROOM)
    assert wait_until(lambda: b.fingerprint in sa.pending())
    assert wait_until(lambda: b.trust.get_pinned_public_key(a.fingerprint) is not None)
    sa.approve(b.fingerprint)
    hub.flush()
    assert dropped and not sb.has_key()
    assert b.is_rebroadcasting(ROOM)
    sa.approve(b.fingerprint)
    assert wait_until(lambda: sb.key_id() == sa.key_id())


def test_malformed_and_foreign_envelopes_are_ignored(make_nodes):
    (a,) = make_nodes(1)
    a.join(ROOM, create=True)
    before = len(a.events)
    assert a.handle(ROOM, b"junk") == []
    assert a.handle(ROOM, b'{"type":"room-key","to":"pk_other0000","from":"x","body":"{}"}') == []
    assert a.handle(ROOM, b'{"type":"dm","to":"pk_other0000","from":"x","body":"{}"}') == []
    assert len(a.events) == before


def test_handshake_with_wrong_key_reports_mismatch(make_nodes):
    (a,) = make_nodes(1)
    a.join(ROOM, create=True)
    claimed, actual = generate_identity(), generate_identity()
    assert a.handle(ROOM, encode_envelope(make_hs(claimed.fingerprint, actual.public_key))) == []
    assert codes(a, EV.EV_TRUST_MISMATCH)
    assert a.trust.get_pinned_public_key(claimed.fingerprint) is None


def test_new_handshake_gets_acked(make_nodes):
    (a,) = make_nodes(1)
    a.join(ROOM, create=True)
    peer = generate_identity()
    replies = a.handle(ROOM, encode_envelope(make_hs(peer.fingerprint, peer.public_key)))
    assert [r["type"] for r in replies] == ["hs-ack"]
    assert replies[0]["fp"] == a.fingerprint


def test_unknown_key_id_is_stale(make_nodes):
    (a,) = make_nodes(1)
    a.join(ROOM, create=True)
    a.handle(ROOM, encode_envelope(make_gchat("pk_someone0", '{"n":"","b":""}', "1")))
    assert codes(a, EV.EV_STALE_KEY)


def test_events_reach_callback(make_nodes):
    seen = []
    (a,) = make_nodes(1, on_event=seen.append)
    a.join(ROOM, create=True)
    assert [ev.code for ev in seen] == [EV.EV_CONNECTED]
    assert seen[0].room == ROOM and seen[0].kind == EV.KIND_SYS


def test_shutdown_cancels_rebroadcast(make_nodes):
    (b,) = make_nodes(1)
    b.join(ROOM)
    assert b.is_rebroadcasting(ROOM)
    b.shutdown()
    assert not b.is_rebroadcasting(ROOM)
    assert b.joined_rooms() == []
    with pytest.raises(RuntimeError):
        b.join(ROOM)


def test_late_owner_hears_joiner_without_waiting_for_the_timer(make_nodes, hub, wait_until):
    a, b = make_nodes(2, interval=60.0)
    b.join(ROOM)
    assert hub.flush()
    # nobody was on the room yet
    assert b.trust.get_pinned_public_key(a.fingerprint) is None
    sa = a.join(ROOM, create=True)
    assert wait_until(lambda: b.fingerprint in sa.pending(), timeout=3.0)
    admit(sa, b, wait_until)
    assert wait_until(lambda: codes(b, EV.EV_JOINED))


@pytest.mark.parametrize("pk_b64", ["not base64!", "AAAA"])
def test_handshake_with_unusable_key_is_dropped_quietly(make_nodes, pk_b64):
    (a,) = make_nodes(1)
    a.join(ROOM, create=True)
    before = len(a.events)
    hs = {"type": "hs", "fp": "pk_someone0", "pkB64": pk_b64}
    assert a.handle(ROOM, json.dumps(hs).encode()) == []
    assert len(a.events) == before
    assert a.trust.get_pinned_public_key("pk_someone0") is None


def test_rejection_from_a_non_owner_is_ignored(make_nodes):
    (b,) = make_nodes(1)
    b.join(ROOM)
    # sorts after every real fingerprint, so it can never be our owner
    forged = make_join_rej(b.fingerprint, "pk_~~~~~~~~~~")
    assert b.handle(ROOM, encode_envelope(forged)) == []
    assert b.is_rebroadcasting(ROOM)
    assert not codes(b, EV.EV_JOIN_REJECTED)
    lower = make_join_rej(b.fingerprint, "pk_++++++++++")
    b.handle(ROOM, encode_envelope(lower))
    assert codes(b, EV.EV_JOIN_REJECTED)
    assert not b.is_rebroadcasting(ROOM)
