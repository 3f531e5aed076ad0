# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: NaCl-box; NaCl-secretbox; TOFU

from typing import TYPE_CHECKING, Any, Dict, List

# ---------------- Local Project ----------------
from ..utils import config as CFG
from ..utils.errors import DecryptFailure, MalformedEnvelope, StaleKey, TrustMismatch
from ..utils.helpers import try_b64decode
from ..room.membership import owner_of
from ..wallet.identity import ContactStatus
from ..wallet.sealed import decrypt_dm
from . import events as EV
from .protocol import decode_envelope, decode_grant, make_hs_ack

# ---------------- Logger ----------------
from ..utils.dechat_logging import get_ctx_logger
log = get_ctx_logger("dechat.network(processing_msg)")


if TYPE_CHECKING:
    from .node import ChatNode

__all__ = ["process_message"]


def process_message(self: "ChatNode", room: str, data: bytes) -> List[Dict[str, Any]]:
    """Handle one inbound payload on ``room`` and return the envelopes sent in reply.

    Malformed payloads and envelopes addressed to someone else are dropped
    without a reply. The room lock is held for the whole envelope, reply included.
    """
    try:
        message = decode_envelope(data)
    except MalformedEnvelope as exc:
        log.debug("[process_message] dropped payload: %s", exc.to_dict(), extra={"room": room})
        return []

    with self.rooms.room_lock(room):
        replies = _dispatch(self, room, message)
        for reply in replies:
            self.publish(room, reply)
    return replies


def _dispatch(self: "ChatNode", room: str, message: Dict[str, Any]) -> List[Dict[str, Any]]:
    mtype = message["type"]
    me = self.fingerprint

    # =============== HANDSHAKE ===============
    if mtype in (CFG.MSG_HS, CFG.MSG_HS_ACK):
        fp = message["fp"]
        if fp == me:
            return []
        pk = try_b64decode(message["pkB64"])
        if pk is None or len(pk) != CFG.KEY_BYTES:
            log.debug("[process_message] %s from %s carries an unusable key, dropped", mtype, fp,
                      extra={"room": room, "peer": fp})
            return []
        status = self.trust.add_or_verify_contact(fp, pk)
        if status is ContactStatus.MISMATCH:
            err = TrustMismatch(f"key for {fp} does not match", fingerprint=fp)
            log.warning("[process_message] %s", err.to_dict(), extra={"room": room, "peer": fp})
            self.emit(EV.KIND_SYS, room, fp, err.message, EV.EV_TRUST_MISMATCH)
            return []
        if mtype != CFG.MSG_HS:
            return []
        # re-ack a known peer that is not yet in the room, its first ack may be lost
        if status is ContactStatus.ADDED or not self.rooms.is_member(room, fp):
            return [make_hs_ack(me, self.identity.public_key)]
        return []

    # =============== JOIN ===============
    elif mtype == CFG.MSG_JOIN_REQ:
        frm = message["from"]
        if frm == me or not self.rooms.is_owner(room, me):
            return []
        if self.rooms.is_member(room, frm):
            return []
        if self.rooms.add_pending(room, frm):
            log.info("[process_message] join request from %s", frm, extra={"room": room, "peer": frm})
            self.emit(EV.KIND_SYS, room, frm, f"{frm} asks to join", EV.EV_JOIN_REQUEST)
        return []

    elif mtype == CFG.MSG_JOIN_REJ:
        if message["to"] != me:
            return []
        frm = message["from"]
        # only a peer that would be owner once counted in can turn us away
        if owner_of(self.rooms.list_members(room) | {frm}, me) != frm:
            log.debug("[process_message] join-rej from non-owner %s ignored", frm, extra={"room": room, "peer": frm})
            return []
        self.stop_rebroadcast(room)
        self.emit(EV.KIND_SYS, room, frm, f"join rejected by {frm}", EV.EV_JOIN_REJECTED)
        return []

    elif mtype == CFG.MSG_ROOM_KEY:
        if message["to"] != me:
            return []
        return _handle_room_key(self, room, message)

    # =============== CHAT ===============
    elif mtype == CFG.MSG_GCHAT:
        frm = message["from"]
        if frm == me:
            return []
        try:
            text = self.rooms.decrypt_group(room, message["body"], message["keyId"])
        except StaleKey as exc:
            log.info("[process_message] stale key %s from %s", message["keyId"], frm,
                     extra={"room": room, "peer": frm})
            self.emit(EV.KIND_SYS, room, frm, exc.message, EV.EV_STALE_KEY, key_id=message["keyId"])
            return []
        except DecryptFailure as exc:
            log.warning("[process_message] group message from %s failed: %s", frm, exc.message,
                        extra={"room": room, "peer": frm})
            self.emit(EV.KIND_SYS, room, frm, exc.message, EV.EV_DECRYPT_FAILED, key_id=message["keyId"])
            return []
        self.emit(EV.KIND_ROOM, room, frm, text, key_id=message["keyId"])
        return []

    elif mtype == CFG.MSG_DM:
        if message["to"] != me:
            return []
        frm = message["from"]
        sender_pk = self.trust.get_pinned_public_key(frm)
        if sender_pk is None:
            log.debug("[process_message] dm from unpinned %s dropped", frm, extra={"room": room, "peer": frm})
            return []
        try:
            text = decrypt_dm(self.identity.secret_key, sender_pk, message["body"])
        except DecryptFailure as exc:
            self.emit(EV.KIND_SYS, room, frm, exc.message, EV.EV_DECRYPT_FAILED)
            return []
        self.emit(EV.KIND_DM, room, frm, text)
        return []

    return []


def _handle_room_key(self: "ChatNode", room: str, message: Dict[str, Any]) -> List[Dict[str, Any]]:
    me = self.fingerprint
    frm = message["from"]
    sender_pk = self.trust.get_pinned_public_key(frm)
    if sender_pk is None:
        log.debug("[_handle_room_key] grant from unpinned %s dropped", frm, extra={"room": room, "peer": frm})
        return []
    try:
        plain = decrypt_dm(self.identity.secret_key, sender_pk, message["body"])
        key_b64, key_id, members = decode_grant(plain)
    except DecryptFailure as exc:
        self.emit(EV.KIND_SYS, room, frm, exc.message, EV.EV_DECRYPT_FAILED)
        return []
    except MalformedEnvelope as exc:
        log.warning("[_handle_room_key] bad grant from %s: %s", frm, exc.message, extra={"room": room, "peer": frm})
        return []

    had_key = self.rooms.get_current_key_id(room)
    self.rooms.set_group_key_from_owner(room, key_b64, key_id)
    if members is not None:
        self.rooms.replace_members(room, set(members) | {me, frm})
    else:
        self.rooms.add_member(room, me)
        self.rooms.add_member(room, frm)
    self.rooms.remove_pending(room, me)
    self.stop_rebroadcast(room)

    if had_key is None:
        self.emit(EV.KIND_SYS, room, frm, f"joined {room}", EV.EV_JOINED, key_id=key_id)
    elif had_key != key_id:
        self.emit(EV.KIND_SYS, room, frm, f"room key rotated to {key_id}", EV.EV_REKEYED, key_id=key_id)
    return []
