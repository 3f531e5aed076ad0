# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# In-process self-test for Dechat: join, approve, group chat, DM, kick

import argparse
import sys
import time

from dechat.network.node import ChatNode
from dechat.network.transport import LocalHub
from dechat.storage.kv import MemoryStore
from dechat.utils import config as CFG
from dechat.utils.dechat_logging import export_log_bundle, setup_logging
from dechat.utils.errors import NoGroupKey
from dechat.utils.helpers import print_banner, short_fp


def _wait_for(cond, hub: LocalHub, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        hub.flush(timeout=0.5)
        if cond():
            return True
        time.sleep(0.05)
    return cond()


def _texts(node: ChatNode, kind: str):
    return [ev.text for ev in list(node.events) if ev.kind == kind]


class SelfTest:
    def __init__(self, room: str, interval: float, timeout: float):
        self.room = room
        self.interval = interval
        self.timeout = timeout
        self.hub = LocalHub()
        self.nodes: list[ChatNode] = []
        self.results: list[tuple[str, bool]] = []

    def check(self, name: str, ok: bool):
        self.results.append((name, bool(ok)))
        print(f"  [{'PASS' if ok else 'FAIL'}] {name}")

    def _spawn(self, label: str) -> ChatNode:
        node = ChatNode(MemoryStore(), self.hub.transport(label), rebroadcast_interval=self.interval)
        self.nodes.append(node)
        return node

    def run(self) -> bool:
        print_banner()
        print(f"Self-test on room {self.room!r}")
        # the owner is the smallest fingerprint, so order the three identities
        a, b, c = sorted((self._spawn(n) for n in ("a", "b", "c")), key=lambda n: n.fingerprint)
        for label, node in zip("ABC", (a, b, c)):
            print(f"  peer {label}: {short_fp(node.fingerprint)}")
        wait = lambda cond: _wait_for(cond, self.hub, self.timeout)

        sa = a.join(self.room, create=True)
        sb = b.join(self.room)
        self.check("joiner without key cannot send", self._raises_no_key(sb))
        self.check("owner sees join request", wait(lambda: b.fingerprint in sa.pending()))
        self.check("joiner pinned owner", wait(lambda: b.trust.get_pinned_public_key(a.fingerprint) is not None))

        self.check("approve sends grant", sa.approve(b.fingerprint))
        self.check("joiner installed room key", wait(lambda: sb.key_id() == sa.key_id()))
        self.check("joiner stopped rebroadcast", wait(lambda: not b.is_rebroadcasting(self.room)))
        self.check("members converge", wait(lambda: sa.members() == sb.members()))

        sa.send_group("hello from A")
        self.check("group message delivered", wait(lambda: "hello from A" in _texts(b, "room")))
        sb.send_dm(a.fingerprint, "psst")
        self.check("dm delivered", wait(lambda: "psst" in _texts(a, "dm")))

        sc = c.join(self.room)
        wait(lambda: c.fingerprint in sa.pending())
        sa.approve(c.fingerprint)
        self.check("third peer admitted", wait(lambda: sc.key_id() == sa.key_id()))
        self.check("member list reaches everyone", wait(lambda: sa.members() == sb.members() == sc.members()))

        old = sa.key_id()
        sa.kick(c.fingerprint)
        self.check("kick rotates key", sa.key_id() != old)
        self.check("remaining member gets new key", wait(lambda: sb.key_id() == sa.key_id()))
        self.check("kicked member keeps old key", sc.key_id() == old)
        sa.send_group("after kick")
        wait(lambda: "after kick" in _texts(b, "room"))
        self.check("kicked member cannot read", "after kick" not in _texts(c, "room"))

        snap = sa.snapshot()
        print(f"  final room state: owner={short_fp(snap['owner'])} members={len(snap['members'])} keyId={snap['keyId']}")
        for node in self.nodes:
            node.shutdown(close_transport=True)
        failed = [n for n, ok in self.results if not ok]
        print(f"\n{len(self.results) - len(failed)}/{len(self.results)} checks passed")
        return not failed

    def _raises_no_key(self, session) -> bool:
        try:
            session.send_group("too early")
        except NoGroupKey:
            return True
        return False


def main():
    ap = argparse.ArgumentParser(description="Run an in-process Dechat self-test.")
    ap.add_argument("--room", default=CFG.DEFAULT_ROOM, help="room name to use")
    ap.add_argument("--interval", type=float, default=0.2, help="bootstrap rebroadcast interval in seconds")
    ap.add_argument("--timeout", type=float, default=5.0, help="seconds to wait for each step")
    ap.add_argument("-v", "--verbose", action="store_true", help="also log to console")
    ap.add_argument("--log-bundle", metavar="ZIP", help="zip the log files here after the run")
    args = ap.parse_args()

    setup_logging(to_console=args.verbose)
    ok = SelfTest(args.room, args.interval, args.timeout).run()
    if args.log_bundle:
        print(f"Logs bundled to {export_log_bundle(args.log_bundle)}")
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
