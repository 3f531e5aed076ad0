# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: RFC4648-Base64
from __future__ import annotations
import base64, binascii, json, time

from ..utils import config as CFG


def b64encode(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")

def b64decode(text: str) -> bytes:
    # strict: reject characters outside the alphabet instead of skipping them
    return base64.b64decode(text.encode("ascii"), validate=True)

def try_b64decode(text) -> bytes | None:
    if not isinstance(text, str):
        return None
    try:
        return b64decode(text)
    except (binascii.Error, ValueError, UnicodeEncodeError):
        return None

def compact_dumps(obj) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)

def now_ms() -> int:
    return int(time.time() * 1000)

def next_key_id(previous: str | None) -> str:
    """Millisecond timestamp, bumped past ``previous`` so two rotations never share an id."""
    ts = now_ms()
    if previous and previous.isdigit():
        ts = max(ts, int(previous) + 1)
    return str(ts)

def short_fp(fp: str) -> str:
    fp = fp or ""
    return fp if len(fp) <= len(CFG.FINGERPRINT_PREFIX) + 6 else fp[: len(CFG.FINGERPRINT_PREFIX) + 6] + "…"

def print_banner():
    banner = r"""
     ____            _           _
    |  _ \  ___  ___| |__   __ _| |_
    | | | |/ _ \/ __| '_ \ / _` | __|
    | |_| |  __/ (__| | | | (_| | |_
    |____/ \___|\___|_| |_|\__,_|\__|

          Rooms without a server of record
    """
    print(banner)
