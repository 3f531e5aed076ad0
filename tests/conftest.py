# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: see REFERENCES.md

import os
import sys
import time

import pytest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC_ROOT = os.path.join(PROJECT_ROOT, "src")
for path in (PROJECT_ROOT, SRC_ROOT):
    if path not in sys.path:
        sys.path.append(path)

from dechat.network.node import ChatNode  # noqa: E402
from dechat.network.transport import LocalHub  # noqa: E402
from dechat.storage.kv import MemoryStore  # noqa: E402

FAST_REBROADCAST_S = 0.05


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hub():
    return LocalHub()


@pytest.fixture
def make_nodes(hub):
    """Factory for ``n`` nodes on one hub, returned in fingerprint order (first one owns)."""
    created = []

    def _make(n=2, interval=FAST_REBROADCAST_S, on_event=None):
        nodes = [ChatNode(MemoryStore(), hub.transport(f"n{i}"), on_event=on_event,
                          rebroadcast_interval=interval) for i in range(n)]
        created.extend(nodes)
        return sorted(nodes, key=lambda node: node.fingerprint)

    yield _make
    for node in created:
        node.shutdown(close_transport=True)


@pytest.fixture
def wait_until(hub):
    def _wait(cond, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            hub.flush(timeout=0.5)
            if cond():
                return True
            time.sleep(0.01)
        return cond()
    return _wait
