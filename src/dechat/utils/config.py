# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: NaCl-box; NaCl-secretbox; RFC7748-X25519

'''
=============================================================================
 -------- !!! WIRE-COMPATIBILITY REMINDER - READ BEFORE EDITING !!! --------
=============================================================================

The values below **MUST BE IDENTICAL** across all peers of a room.
Changing them makes peers unable to pin, decrypt or even parse each other.

  1) IDENTITY
   - FINGERPRINT_PREFIX, FINGERPRINT_B64_CHARS
   - KEY_BYTES

  2) SEALED CHANNEL
   - NONCE_BYTES

  3) ENVELOPE
   - MSG_* type names
   - BACKUP_VERSION

NOT WIRE-CRITICAL (safe to differ between peers):
   rebroadcast cadence, storage paths, LMDB sizing, logging.

=============================================================================
'''

import os
import appdirs


# =============================================================================
# 1. MODE & APPLICATION
# =============================================================================
# ---- RUNTIME PROFILE ----
MODE   = "dev"  # default runtime profile, switch to "prod" for daily use
IS_DEV = (MODE.lower() == "dev")  # cached boolean to simplify dev/prod toggles

# ---- APP METADATA ----
APP_NAME   = "Dechat"  # display name used for user data directories
APP_AUTHOR = "TsarStudio"  # vendor string passed into platform dir helpers
DATA_DIR   = appdirs.user_data_dir(APP_NAME, APP_AUTHOR)  # OS-specific data folder resolved via appdirs


# =============================================================================
# 2. FILESYSTEM LAYOUT
# =============================================================================
# ---- LOCAL STORE ----
DB_DIR        = os.path.join(DATA_DIR, "DB")  # LMDB root folder for identity, contacts and rooms
KV_BACKEND    = "lmdb"  # "lmdb" for the persistent store, "memory" for throwaway sessions
KV_DB_NAME    = "dechat"  # named sub-database holding every local key
BACKUP_PREFIX = "dechat-backup"  # default file stem used by the backup CLI


# =============================================================================
# 3. IDENTITY & TRUST
# =============================================================================
KEY_BYTES             = 32  # X25519 public/secret key size and secretbox key size
FINGERPRINT_PREFIX    = "pk_"  # every fingerprint starts with this marker
FINGERPRINT_B64_CHARS = 10  # base64 characters of the public key kept in a fingerprint

# ---- STORAGE KEYS ----
SK_IDENTITY         = "meshed:id"  # JSON {publicKey, secretKey} (base64)
SK_CONTACTS         = "meshed:contacts"  # JSON {fingerprint: publicKey-base64}
SK_ROOM_PREFIX      = "meshed:room:"  # namespace for every per-room key
SK_ROOM_KEY_FMT     = SK_ROOM_PREFIX + "{room}:key"  # base64 room key
SK_ROOM_KEYID_FMT   = SK_ROOM_PREFIX + "{room}:keyid"  # opaque keyId string
SK_ROOM_MEMBERS_FMT = SK_ROOM_PREFIX + "{room}:members"  # JSON list of fingerprints
SK_ROOM_PENDING_FMT = SK_ROOM_PREFIX + "{room}:pending"  # JSON list of fingerprints


# =============================================================================
# 4. SEALED CHANNEL
# =============================================================================
NONCE_BYTES = 24  # XSalsa20 nonce size, random per message


# =============================================================================
# 5. ROOM PROTOCOL
# =============================================================================
# ---- MESSAGE TYPES ----
MSG_HS       = "hs"  # handshake: announce fingerprint + public key
MSG_HS_ACK   = "hs-ack"  # handshake reply, pins only
MSG_JOIN_REQ = "join-req"  # ask the owner for admission
MSG_JOIN_REJ = "join-rej"  # owner refused a join request
MSG_ROOM_KEY = "room-key"  # owner grants the room key over an authenticated DM
MSG_GCHAT    = "gchat"  # group message under the room key
MSG_DM       = "dm"  # pairwise message
MSG_TYPES    = (MSG_HS, MSG_HS_ACK, MSG_JOIN_REQ, MSG_JOIN_REJ, MSG_ROOM_KEY, MSG_GCHAT, MSG_DM)

# ---- CADENCE ----
DEFAULT_ROOM           = os.environ.get("DECHAT_DEFAULT_ROOM", "dechat-global")  # room joined when none is given
REBROADCAST_INTERVAL_S = 5.0  # seconds between bootstrap hs/join-req resends
REBROADCAST_JOIN_S     = 1.5  # seconds to wait for the rebroadcast thread on cancel

# ---- LIMITS ----
MAX_ENVELOPE_BYTES = 256 * 1024  # inbound payloads above this are dropped unparsed
MAX_TEXT_CHARS     = 16 * 1024  # refuse to seal user text longer than this

# ---- BACKUP ----
BACKUP_VERSION = 1  # only version understood by restore
BACKUP_SCRYPT_N = 2**15  # scrypt cost for passphrase-sealed backups


# =============================================================================
# 6. DATABASE
# =============================================================================
LMDB_MAP_SIZE_INIT = 16 * 1024 * 1024  # initial LMDB map size (16 MiB)
LMDB_MAP_SIZE_MAX  = 1024 * 1024 * 1024  # upper LMDB map cap (1 GiB)
LMDB_MAX_DBS       = 4  # named sub-databases allowed in the environment


# =============================================================================
# 7. LOGGING
# =============================================================================
# ---- BASE OUTPUT ----
LOG_PATH             = os.path.join(DATA_DIR, "logging", "dechat.log")  # canonical log file path before format-specific override
LOG_SHOW_PROCESS     = False  # include process metadata in log context when True
LOG_PROC_PLACEHOLDER = "-"  # value used when process info is hidden

# ---- MODE PROFILES ----
if IS_DEV:
    # ---- DEV PROFILE ----
    LOG_LEVEL                   = "TRACE"  # very verbose logging for development
    LOG_FORMAT                  = "plain"  # plain text logs ease local debugging
    LOG_TO_CONSOLE              = True  # mirror logs to stdout for dev loops
    LOG_RATE_LIMIT_SECONDS      = 0.0  # disable console throttling in dev
    LOG_FILE_RATE_LIMIT_SECONDS = 0.0  # disable file throttling in dev
    LOG_ROTATE_MAX_BYTES        = 5_000_000  # rollover log files after ~5MB in dev
    LOG_BACKUP_COUNT            = 3  # retain a few rotated dev log files
else:
    # ---- PROD PROFILE ----
    LOG_LEVEL                   = "INFO"  # balanced verbosity for daily use
    LOG_FORMAT                  = "json"  # JSON logs simplify ingestion
    LOG_TO_CONSOLE              = False  # keep the terminal for the chat itself
    LOG_RATE_LIMIT_SECONDS      = 2.0  # throttle console spam
    LOG_FILE_RATE_LIMIT_SECONDS = 1.0  # throttle file spam (rebroadcast noise)
    LOG_ROTATE_MAX_BYTES        = 10_000_000  # rollover log files after ~10MB
    LOG_BACKUP_COUNT            = 7  # keep more history

# ---- LOG PATH NORMALIZATION ----
try:
    _LOG_BASE = os.path.join(DATA_DIR, "logging", "dechat")  # base path used to pick extension
    _fmt      = str(LOG_FORMAT).lower().strip()  # normalized log format string

    if _fmt == "json":
        LOG_PATH = _LOG_BASE + ".jsonl"  # JSON lines extension to aid parsing
    else:
        LOG_PATH = _LOG_BASE + ".log"  # plain-text log extension fallback
except Exception:
    pass  # keep the canonical path when normalization fails
