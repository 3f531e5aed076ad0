# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: NaCl-box; NaCl-secretbox; TOFU

from __future__ import annotations

import threading
from collections import deque
from typing import Any, Callable, Dict, List, Optional

# ---------------- Local Project ----------------
from ..room.membership import RoomKeyInfo, RoomManager
from ..storage.kv import KVStore
from ..utils import config as CFG
from ..utils.errors import NoGroupKey, NotAuthorized, UnknownPeer
from ..wallet.identity import TrustStore
from ..wallet.sealed import GroupCiphertext, encrypt_dm
from . import events as EV
from .events import ChatEvent
from .processing_msg import process_message
from .protocol import (encode_envelope, encode_grant, make_dm, make_gchat,
                       make_hs, make_join_rej, make_join_req, make_room_key)
from .transport import Transport

# ---------------- Logger ----------------
from ..utils.dechat_logging import get_ctx_logger
log = get_ctx_logger("dechat.network(node)")


class Rebroadcaster:
    """Calls ``fn`` every ``interval`` seconds on a daemon thread until cancelled."""

    def __init__(self, fn: Callable[[], None], interval: float, name: str = "rebroadcast"):
        self.fn = fn
        self.interval = max(0.01, float(interval))
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "Rebroadcaster":
        self._thread.start()
        return self

    @property
    def active(self) -> bool:
        return not self._stop.is_set() and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.fn()
            except Exception:
                log.exception("[Rebroadcaster] tick failed")

    def cancel(self, wait: bool = True) -> None:
        self._stop.set()
        if wait and self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout=CFG.REBROADCAST_JOIN_S)


class RoomSession:
    """User-facing handle for one joined room."""

    def __init__(self, node: "ChatNode", room: str):
        self.node = node
        self.room = room

    def __repr__(self) -> str:
        return f"RoomSession(room={self.room!r}, me={self.node.fingerprint!r})"

    # ---------- state ----------
    def members(self) -> List[str]:
        return sorted(self.node.rooms.list_members(self.room))

    def pending(self) -> List[str]:
        return sorted(self.node.rooms.list_pending(self.room))

    def owner(self) -> str:
        return self.node.rooms.get_owner_fingerprint(self.room, self.node.fingerprint)

    def is_owner(self) -> bool:
        return self.node.rooms.is_owner(self.room, self.node.fingerprint)

    def has_key(self) -> bool:
        return self.node.rooms.get_group_key(self.room) is not None

    def key_id(self) -> Optional[str]:
        return self.node.rooms.get_current_key_id(self.room)

    def snapshot(self) -> Dict[str, Any]:
        return self.node.rooms.snapshot(self.room, self.node.fingerprint)

    # ---------- owner operations ----------
    def _require_owner(self, action: str) -> None:
        if not self.is_owner():
            raise NotAuthorized(f"{action}: only the room owner may do this",
                                {"room": self.room, "owner": self.owner()})

    def approve(self, fp: str) -> bool:
        """Admit ``fp`` and send it the room key. Returns False when the grant could not be sent."""
        node, rooms = self.node, self.node.rooms
        with rooms.room_lock(self.room):
            self._require_owner("approve")
            rooms.add_member(self.room, fp)
            rooms.remove_pending(self.room, fp)
            info = rooms.ensure_room_key(self.room)
            # every member gets the new member list, the newcomer also gets the key
            sent = self._distribute(info).get(fp, False)
        node.emit(EV.KIND_SYS, self.room, fp, f"approved {fp}", EV.EV_APPROVED, key_id=info.key_id)
        return sent

    def reject(self, fp: str) -> None:
        node, rooms = self.node, self.node.rooms
        with rooms.room_lock(self.room):
            self._require_owner("reject")
            rooms.remove_pending(self.room, fp)
            node.publish(self.room, make_join_rej(fp, node.fingerprint))
        node.emit(EV.KIND_SYS, self.room, fp, f"rejected {fp}", EV.EV_REJECTED)

    def kick(self, fp: str) -> RoomKeyInfo:
        node, rooms = self.node, self.node.rooms
        if fp == node.fingerprint:
            raise ValueError("the owner cannot kick itself")
        with rooms.room_lock(self.room):
            self._require_owner("kick")
            rooms.remove_member(self.room, fp)
            rooms.remove_pending(self.room, fp)
            info = rooms.rotate_group_key(self.room)
            self._distribute(info)
        log.info("[kick] removed %s, now keyId=%s", fp, info.key_id, extra={"room": self.room, "peer": fp})
        node.emit(EV.KIND_SYS, self.room, fp, f"kicked {fp}", EV.EV_KICKED, key_id=info.key_id)
        return info

    def rotate_key(self) -> RoomKeyInfo:
        node, rooms = self.node, self.node.rooms
        with rooms.room_lock(self.room):
            self._require_owner("rotate_key")
            info = rooms.rotate_group_key(self.room)
            self._distribute(info)
        node.emit(EV.KIND_SYS, self.room, node.fingerprint, f"rotated to {info.key_id}", EV.EV_ROTATED,
                  key_id=info.key_id)
        return info

    def _grant(self, fp: str, info: RoomKeyInfo) -> bool:
        node = self.node
        pk = node.trust.get_pinned_public_key(fp)
        if pk is None:
            log.warning("[_grant] no pinned key for %s, grant not sent", fp, extra={"room": self.room, "peer": fp})
            node.emit(EV.KIND_SYS, self.room, fp, f"no pinned key for {fp}, grant not sent", EV.EV_GRANT_SKIPPED)
            return False
        grant = encode_grant(info.key_b64, info.key_id, node.rooms.list_members(self.room))
        body = encrypt_dm(node.identity.secret_key, pk, grant)
        node.publish(self.room, make_room_key(fp, node.fingerprint, body))
        return True

    def _distribute(self, info: RoomKeyInfo) -> Dict[str, bool]:
        sent: Dict[str, bool] = {}
        for fp in sorted(self.node.rooms.list_members(self.room)):
            if fp != self.node.fingerprint:
                sent[fp] = self._grant(fp, info)
        return sent

    # ---------- messaging ----------
    def send_group(self, text: str) -> GroupCiphertext:
        _check_text(text)
        node = self.node
        ct = node.rooms.encrypt_group(self.room, text)
        if ct is None:
            raise NoGroupKey(f"no room key for {self.room} yet", {"room": self.room})
        node.publish(self.room, make_gchat(node.fingerprint, ct.body, ct.key_id))
        return ct

    def send_dm(self, fp: str, text: str) -> str:
        _check_text(text)
        node = self.node
        pk = node.trust.get_pinned_public_key(fp)
        if pk is None:
            raise UnknownPeer(f"no pinned key for {fp}", fingerprint=fp)
        body = encrypt_dm(node.identity.secret_key, pk, text)
        node.publish(self.room, make_dm(fp, node.fingerprint, body))
        return body

    def leave(self) -> None:
        self.node.leave(self.room)


def _check_text(text: str) -> None:
    if not isinstance(text, str):
        raise TypeError("text must be str")
    if len(text) > CFG.MAX_TEXT_CHARS:
        raise ValueError(f"text longer than {CFG.MAX_TEXT_CHARS} characters")


class ChatNode:
    """One local identity attached to a transport, with any number of joined rooms.

    Inbound envelopes are handed to ``process_message``. Events (chat lines,
    DMs, membership changes, failures) go to ``on_event`` and are also kept
    in ``self.events``.
    """

    def __init__(self, store: KVStore, transport: Transport,
                 on_event: Optional[Callable[[ChatEvent], None]] = None,
                 rebroadcast_interval: Optional[float] = None):
        self.lock = threading.RLock()
        self.store = store
        self.transport = transport
        self.on_event = on_event
        self.rebroadcast_interval = (CFG.REBROADCAST_INTERVAL_S if rebroadcast_interval is None
                                     else float(rebroadcast_interval))

        self.trust = TrustStore(store)
        self.identity = self.trust.get_or_create_identity()
        self.rooms = RoomManager(store)
        self.events: deque = deque(maxlen=1000)

        self._sessions: Dict[str, RoomSession] = {}
        self._rebroadcasters: Dict[str, Rebroadcaster] = {}
        self._closed = False
        transport.on_peer_connected(self._on_peer_connected)

    @property
    def fingerprint(self) -> str:
        return self.identity.fingerprint

    # ---------- plumbing ----------
    def publish(self, room: str, envelope: Dict[str, Any]) -> None:
        log.trace("[publish] %s", envelope.get("type"), extra={"room": room})
        self.transport.publish(room, encode_envelope(envelope))

    def emit(self, kind: str, room: str, sender: str, text: str, code: str = EV.EV_MESSAGE,
             key_id: Optional[str] = None) -> ChatEvent:
        ev = ChatEvent(kind=kind, room=room, sender=sender, text=text, code=code, key_id=key_id)
        self.events.append(ev)
        if self.on_event is not None:
            try:
                self.on_event(ev)
            except Exception:
                log.exception("[emit] on_event callback failed", extra={"room": room})
        return ev

    def handle(self, room: str, data: bytes) -> List[Dict[str, Any]]:
        return process_message(self, room, data)

    # ---------- rooms ----------
    def join(self, room: str = CFG.DEFAULT_ROOM, create: bool = False) -> RoomSession:
        """Subscribe to ``room`` and announce ourselves.

        ``create=True`` mints the room key if none is stored. Without a key the
        node keeps re-sending ``hs`` and ``join-req`` until an owner grants one.
        """
        if not room:
            raise ValueError("room name is required")
        with self.lock:
            if self._closed:
                raise RuntimeError("node is shut down")
            session = self._sessions.get(room)
            if session is None:
                session = self._sessions[room] = RoomSession(self, room)
            self.transport.subscribe(room, lambda data, room=room: self.handle(room, data))

        with self.rooms.room_lock(room):
            self.rooms.add_member(room, self.fingerprint)
            if create:
                self.rooms.ensure_room_key(room)
            has_key = self.rooms.get_group_key(room) is not None

        self.publish(room, make_hs(self.fingerprint, self.identity.public_key))
        if not has_key:
            self.publish(room, make_join_req(self.fingerprint))
            self._start_rebroadcast(room)
        log.info("[join] joined as %s (key=%s)", self.fingerprint, has_key, extra={"room": room})
        self.emit(EV.KIND_SYS, room, self.fingerprint, f"connected to {room}", EV.EV_CONNECTED)
        return session

    def session(self, room: str) -> Optional[RoomSession]:
        with self.lock:
            return self._sessions.get(room)

    def joined_rooms(self) -> List[str]:
        with self.lock:
            return sorted(self._sessions)

    def leave(self, room: str) -> None:
        self.stop_rebroadcast(room, wait=True)
        with self.lock:
            self._sessions.pop(room, None)
        self.transport.unsubscribe(room)
        log.info("[leave] left", extra={"room": room})

    # ---------- bootstrap rebroadcast ----------
    def _bootstrap(self, room: str) -> None:
        if self.rooms.get_current_key_id(room) is not None:
            self.stop_rebroadcast(room, wait=False)
            return
        self.publish(room, make_hs(self.fingerprint, self.identity.public_key))
        self.publish(room, make_join_req(self.fingerprint))

    def _start_rebroadcast(self, room: str) -> None:
        with self.lock:
            cur = self._rebroadcasters.get(room)
            if cur is not None and cur.active:
                return
            self._rebroadcasters[room] = Rebroadcaster(
                lambda: self._bootstrap(room), self.rebroadcast_interval, name=f"rebroadcast-{room}").start()

    def is_rebroadcasting(self, room: str) -> bool:
        with self.lock:
            rb = self._rebroadcasters.get(room)
        return rb is not None and rb.active

    def stop_rebroadcast(self, room: str, wait: bool = False) -> None:
        with self.lock:
            rb = self._rebroadcasters.pop(room, None)
        if rb is not None:
            rb.cancel(wait=wait)
            log.debug("[stop_rebroadcast] stopped", extra={"room": room})

    def _on_peer_connected(self) -> None:
        with self.lock:
            rooms = list(self._sessions)
        for room in rooms:
            if self.is_rebroadcasting(room):
                self._bootstrap(room)

    def shutdown(self, close_transport: bool = False) -> None:
        with self.lock:
            self._closed = True
            rooms = list(self._sessions)
        for room in rooms:
            self.leave(room)
        if close_transport:
            self.transport.close()
        log.info("[shutdown] node %s stopped", self.fingerprint)
