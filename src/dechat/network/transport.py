# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: see REFERENCES.md

from __future__ import annotations

import queue, threading, time
from typing import Callable, Dict, List, Optional

# ---------------- Logger ----------------
from ..utils.dechat_logging import get_ctx_logger
log = get_ctx_logger("dechat.network(transport)")

Handler = Callable[[bytes], None]
DropFilter = Callable[[str, bytes, "LocalTransport", "LocalTransport"], bool]


class Transport:
    """Best-effort topic broadcast. No ordering, no delivery guarantee, no loopback."""

    def subscribe(self, topic: str, handler: Handler) -> None:
        raise NotImplementedError

    def unsubscribe(self, topic: str) -> None:
        raise NotImplementedError

    def publish(self, topic: str, data: bytes) -> None:
        raise NotImplementedError

    def on_peer_connected(self, callback: Callable[[], None]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LocalHub:
    """In-process broadcast bus connecting ``LocalTransport`` peers.

    ``drop(topic, data, sender, receiver)`` returning True loses that single
    delivery, which is how tests model an unreliable network.
    """

    def __init__(self, drop: Optional[DropFilter] = None):
        self.drop = drop
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._transports: List["LocalTransport"] = []
        self._inflight = 0
        self.delivered = 0
        self.dropped = 0

    def transport(self, name: str = "") -> "LocalTransport":
        return LocalTransport(self, name)

    def _attach(self, t: "LocalTransport") -> None:
        with self._lock:
            others = [o for o in self._transports if o is not t]
            if t not in self._transports:
                self._transports.append(t)
        # both sides of every new link see a peer-connected event
        for o in others:
            self._enqueue(o, o._fire_peer_connected)
            self._enqueue(t, t._fire_peer_connected)

    def _joined_topic(self, t: "LocalTransport", topic: str) -> None:
        # a new subscriber on a topic is a new peer for everyone already on it
        with self._lock:
            others = [o for o in self._transports if o is not t and o.is_subscribed(topic)]
        for o in others:
            self._enqueue(o, o._fire_peer_connected)
        if others:
            self._enqueue(t, t._fire_peer_connected)

    def _detach(self, t: "LocalTransport") -> None:
        with self._lock:
            if t in self._transports:
                self._transports.remove(t)

    def _enqueue(self, receiver: "LocalTransport", fn: Callable[[], None]) -> None:
        with self._lock:
            self._inflight += 1
        if not receiver._offer(fn):
            self._done()

    def _done(self) -> None:
        with self._lock:
            self._inflight -= 1
            if self._inflight <= 0:
                self._inflight = 0
                self._idle.notify_all()

    def publish(self, sender: "LocalTransport", topic: str, data: bytes) -> int:
        with self._lock:
            receivers = [t for t in self._transports if t is not sender and t.is_subscribed(topic)]
        sent = 0
        for r in receivers:
            if self.drop is not None and self.drop(topic, data, sender, r):
                with self._lock:
                    self.dropped += 1
                log.trace("[publish] dropped %s -> %s on %s", sender.name, r.name, topic)
                continue
            self._enqueue(r, lambda r=r: r._deliver(topic, data))
            sent += 1
        with self._lock:
            self.delivered += sent
        return sent

    def flush(self, timeout: float = 5.0) -> bool:
        """Block until every queued delivery (and whatever it published) has been handled."""
        deadline = time.monotonic() + timeout
        with self._lock:
            while self._inflight > 0:
                left = deadline - time.monotonic()
                if left <= 0:
                    return False
                self._idle.wait(left)
        return True


class LocalTransport(Transport):
    def __init__(self, hub: LocalHub, name: str = ""):
        self.hub = hub
        self.name = name or f"peer-{id(self):x}"
        self._handlers: Dict[str, Handler] = {}
        self._peer_listeners: List[Callable[[], None]] = []
        self._lock = threading.RLock()
        self._q: "queue.Queue[Optional[Callable[[], None]]]" = queue.Queue()
        self._closed = threading.Event()
        self._worker = threading.Thread(target=self._run, name=f"transport-{self.name}", daemon=True)
        self._worker.start()
        hub._attach(self)

    # ---------- worker ----------
    def _offer(self, fn: Callable[[], None]) -> bool:
        with self._lock:
            if self._closed.is_set():
                return False
            self._q.put(fn)
            return True

    def _run(self) -> None:
        while True:
            fn = self._q.get()
            if fn is None:
                break
            try:
                fn()
            except Exception:
                log.exception("[_run] handler error on %s", self.name)
            finally:
                self.hub._done()
        # account for anything left behind after close
        while True:
            try:
                fn = self._q.get_nowait()
            except queue.Empty:
                break
            if fn is not None:
                self.hub._done()

    def _deliver(self, topic: str, data: bytes) -> None:
        with self._lock:
            handler = self._handlers.get(topic)
        if handler is not None:
            handler(data)

    def _fire_peer_connected(self) -> None:
        with self._lock:
            listeners = list(self._peer_listeners)
        for cb in listeners:
            cb()

    # ---------- Transport API ----------
    def is_subscribed(self, topic: str) -> bool:
        with self._lock:
            return topic in self._handlers

    def subscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            fresh = topic not in self._handlers
            self._handlers[topic] = handler
        if fresh and not self._closed.is_set():
            self.hub._joined_topic(self, topic)

    def unsubscribe(self, topic: str) -> None:
        with self._lock:
            self._handlers.pop(topic, None)

    def publish(self, topic: str, data: bytes) -> None:
        if self._closed.is_set():
            log.debug("[publish] %s is closed, dropping", self.name)
            return
        self.hub.publish(self, topic, bytes(data))

    def on_peer_connected(self, callback: Callable[[], None]) -> None:
        with self._lock:
            self._peer_listeners.append(callback)

    def close(self) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            self._q.put(None)
        self.hub._detach(self)
        if threading.current_thread() is not self._worker:
            self._worker.join(timeout=2.0)
