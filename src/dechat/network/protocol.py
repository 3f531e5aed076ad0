# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: RFC8259-JSON; RFC4648-Base64

import json
from typing import Any, Dict, Iterable, List, Optional, Tuple

# ---------------- Local Project ----------------
from ..utils import config as CFG
from ..utils.errors import MalformedEnvelope
from ..utils.helpers import b64encode, try_b64decode, compact_dumps


# -----------------------------
# ENVELOPE SHAPES
# -----------------------------
REQUIRED_FIELDS: Dict[str, Tuple[str, ...]] = {
    CFG.MSG_HS:       ("fp", "pkB64"),
    CFG.MSG_HS_ACK:   ("fp", "pkB64"),
    CFG.MSG_JOIN_REQ: ("from",),
    CFG.MSG_JOIN_REJ: ("to", "from"),
    CFG.MSG_ROOM_KEY: ("to", "from", "body"),
    CFG.MSG_GCHAT:    ("from", "body", "keyId"),
    CFG.MSG_DM:       ("to", "from", "body"),
}


# -----------------------------
# ENCODE & DECODE
# -----------------------------
def encode_envelope(obj: Dict[str, Any]) -> bytes:
    return compact_dumps(obj).encode("utf-8")

def decode_envelope(data: bytes) -> Dict[str, Any]:
    """Parse and shape-check one inbound payload.

    Extra fields are kept (newer peers may add them). Unknown ``type`` values
    and missing or non-string required fields raise ``MalformedEnvelope``.
    """
    if not isinstance(data, (bytes, bytearray)):
        raise MalformedEnvelope("payload is not bytes")
    if len(data) > CFG.MAX_ENVELOPE_BYTES:
        raise MalformedEnvelope("payload too large", {"size": len(data)})
    try:
        obj = json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedEnvelope("payload is not UTF-8 JSON") from exc
    if not isinstance(obj, dict):
        raise MalformedEnvelope("payload is not an object")
    mtype = obj.get("type")
    if not isinstance(mtype, str) or not mtype:
        raise MalformedEnvelope("missing type")
    required = REQUIRED_FIELDS.get(mtype)
    if required is None:
        raise MalformedEnvelope("unknown type", {"type": mtype})
    for field in required:
        if not isinstance(obj.get(field), str) or not obj.get(field):
            raise MalformedEnvelope("missing or invalid field", {"type": mtype, "field": field})
    return obj

def is_envelope(obj: Any) -> bool:
    return isinstance(obj, dict) and obj.get("type") in CFG.MSG_TYPES


# -----------------------------
# BUILDERS
# -----------------------------
def make_hs(fp: str, public_key: bytes) -> Dict[str, Any]:
    return {"type": CFG.MSG_HS, "fp": fp, "pkB64": b64encode(public_key)}

def make_hs_ack(fp: str, public_key: bytes) -> Dict[str, Any]:
    return {"type": CFG.MSG_HS_ACK, "fp": fp, "pkB64": b64encode(public_key)}

def make_join_req(frm: str) -> Dict[str, Any]:
    return {"type": CFG.MSG_JOIN_REQ, "from": frm}

def make_join_rej(to: str, frm: str) -> Dict[str, Any]:
    return {"type": CFG.MSG_JOIN_REJ, "to": to, "from": frm}

def make_room_key(to: str, frm: str, body: str) -> Dict[str, Any]:
    return {"type": CFG.MSG_ROOM_KEY, "to": to, "from": frm, "body": body}

def make_gchat(frm: str, body: str, key_id: str) -> Dict[str, Any]:
    return {"type": CFG.MSG_GCHAT, "from": frm, "body": body, "keyId": key_id}

def make_dm(to: str, frm: str, body: str) -> Dict[str, Any]:
    return {"type": CFG.MSG_DM, "to": to, "from": frm, "body": body}


# -----------------------------
# KEY GRANT (inside the room-key DM)
# -----------------------------
def encode_grant(key_b64: str, key_id: str, members: Optional[Iterable[str]] = None) -> str:
    grant: Dict[str, Any] = {"keyB64": key_b64, "keyId": key_id}
    if members is not None:
        grant["members"] = sorted(members)
    return compact_dumps(grant)

def decode_grant(plain: str) -> Tuple[str, str, Optional[List[str]]]:
    try:
        obj = json.loads(plain)
    except ValueError as exc:
        raise MalformedEnvelope("grant is not JSON") from exc
    if not isinstance(obj, dict):
        raise MalformedEnvelope("grant is not an object")
    key_b64, key_id = obj.get("keyB64"), obj.get("keyId")
    if not isinstance(key_id, str) or not key_id:
        raise MalformedEnvelope("grant without keyId")
    key = try_b64decode(key_b64)
    if key is None or len(key) != CFG.KEY_BYTES:
        raise MalformedEnvelope("grant key has wrong size")
    members = obj.get("members")
    if members is not None:
        if not isinstance(members, list) or not all(isinstance(m, str) for m in members):
            raise MalformedEnvelope("grant members is not a list of fingerprints")
    return key_b64, key_id, members
