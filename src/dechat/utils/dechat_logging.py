# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: see REFERENCES.md
'''
HOW TO USE logging in your code:

log = get_ctx_logger("dechat.network(node)")

log.trace("very technical details, like : every rebroadcast tick, usually unnecessary")
log.info("normal event / milestone")
log.debug("technical details for diagnosis")
log.warning("a non-fatal condition that needs attention")
log.error("handled error")
log.critical("fatal condition")
log.exception("context message when an exception occurs") >automatically include traceback

Pass room/peer context per call with extra={"room": ..., "peer": ...}
or bind it once with get_ctx_logger(name, room=..., peer=...).
'''

from __future__ import annotations

import os, logging, re, json, time, hashlib, platform, zipfile
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional

from dechat.utils import config as CFG

# ===== TRACE level (below DEBUG) =====
TRACE = 9
logging.addLevelName(TRACE, "TRACE")
def _trace(self, msg, *a, **k):
    if self.isEnabledFor(TRACE):
        self._log(TRACE, msg, a, **k)
logging.Logger.trace = _trace

# =========================
# 1) Core logging setup
# =========================

if CFG.LOG_SHOW_PROCESS:
    _DEFAULT_FMT = "%(asctime)s [%(levelname)s] %(processName)s %(name)s [%(room)s %(peer)s]: %(message)s"
else:
    _DEFAULT_FMT = f"%(asctime)s [%(levelname)s] {CFG.LOG_PROC_PLACEHOLDER} %(name)s [%(room)s %(peer)s]: %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"


class RedactFilter(logging.Filter):
    # secret keys and room keys must never reach a log file
    RE_SECRET = re.compile(r'("?(?:secretKey|keyB64|secret_key|key_b64)"?\s*[:=]\s*"?)[A-Za-z0-9+/]{40,}={0,2}')
    RE_KEYHEX = re.compile(r"\b[0-9a-fA-F]{64}\b")
    def filter(self, record):
        msg = record.getMessage()
        msg = self.RE_SECRET.sub(r"\1[REDACTED_KEY]", msg)
        msg = self.RE_KEYHEX.sub("[REDACTED_HEX]", msg)
        record.msg, record.args = msg, None
        return True

class RateLimitFilter(logging.Filter):
    def __init__(self, min_interval: float = 2.0):
        super().__init__()
        self.min_interval = float(min_interval)
        self._last: dict[str, float] = {}
    def filter(self, record):
        base = f"{record.name}|{record.levelno}|{record.msg}"
        key = hashlib.blake2b(base.encode(), digest_size=8).hexdigest()
        now = time.monotonic()
        last = self._last.get(key, 0.0)
        if (now - last) < self.min_interval:
            return False
        self._last[key] = now
        return True

class JsonFormatter(logging.Formatter):
    def format(self, record):
        d = {
            "ts": self.formatTime(record, _DEFAULT_DATEFMT),
            "lvl": record.levelname,
            "logger": record.name,
            "proc": (record.processName if CFG.LOG_SHOW_PROCESS else CFG.LOG_PROC_PLACEHOLDER),
            "msg": record.getMessage(),
        }
        for k in ("room", "peer"):
            v = getattr(record, k, None)
            if v not in (None, "-"):
                d[k] = v
        if record.exc_info:
            d["exc"] = self.formatException(record.exc_info)
        return json.dumps(d, ensure_ascii=False)

class SafeFormatter(logging.Formatter):
    def format(self, record):
        if not hasattr(record, "room"): record.room = "-"
        if not hasattr(record, "peer"): record.peer = "-"
        return super().format(record)

class ContextAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        for k, v in (self.extra or {}).items():
            extra.setdefault(k, v)
        extra.setdefault("room", "-")
        extra.setdefault("peer", "-")
        return msg, kwargs

    def isEnabledFor(self, level: int) -> bool:
        return self.logger.isEnabledFor(level)

    def trace(self, msg, *args, **kwargs):
        if self.logger.isEnabledFor(TRACE):
            self.log(TRACE, msg, *args, **kwargs)

    def bind(self, **ctx) -> "ContextAdapter":
        merged = dict(self.extra or {})
        merged.update(ctx)
        return ContextAdapter(self.logger, merged)


def get_ctx_logger(name: str = "dechat", **ctx) -> ContextAdapter:
    return ContextAdapter(get_logger(name), ctx)

def setup_logging(
    log_file: str | os.PathLike | None = None,
    level: int | str | None = None,
    to_console: bool | None = None,
    rotate_max_bytes: int | None = None,
    backup_count: int | None = None,
    force: bool = False,
    fmt: str = _DEFAULT_FMT,
    datefmt: str = _DEFAULT_DATEFMT,) -> logging.Logger:

    if level is None:
        level = CFG.LOG_LEVEL
    if log_file is None:
        log_file = CFG.LOG_PATH

    # Get preference from CFG when argument is None
    if to_console is None:
        to_console = bool(getattr(CFG, "LOG_TO_CONSOLE", True))
    if rotate_max_bytes is None:
        rotate_max_bytes = int(getattr(CFG, "LOG_ROTATE_MAX_BYTES", 5_000_000))
    if backup_count is None:
        backup_count = int(getattr(CFG, "LOG_BACKUP_COUNT", 3))

    log_path = Path(log_file)
    if log_path.parent and not log_path.parent.exists():
        log_path.parent.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = []
    as_json = str(CFG.LOG_FORMAT).lower() == "json"
    rate_seconds_console = float(getattr(CFG, "LOG_RATE_LIMIT_SECONDS", 0.0))
    rate_seconds_file    = float(getattr(CFG, "LOG_FILE_RATE_LIMIT_SECONDS", 0.0))

    # --- File handler ---
    fh = RotatingFileHandler(
        log_path, maxBytes=int(rotate_max_bytes), backupCount=int(backup_count),
        encoding="utf-8", delay=True
    )
    fh.setFormatter(JsonFormatter() if as_json else SafeFormatter(fmt, datefmt))
    fh.addFilter(RedactFilter())
    if rate_seconds_file > 0.0:
        fh.addFilter(RateLimitFilter(rate_seconds_file))
    handlers.append(fh)

    # --- Console handler (optional) ---
    if to_console:
        sh = logging.StreamHandler()
        sh.setFormatter(JsonFormatter() if as_json else SafeFormatter(fmt, datefmt))
        sh.addFilter(RedactFilter())
        if rate_seconds_console > 0.0:
            sh.addFilter(RateLimitFilter(rate_seconds_console))
        handlers.append(sh)

    # Level
    lvl = level
    if isinstance(lvl, str):
        lvl = logging.getLevelName(lvl.upper())
        if not isinstance(lvl, int):
            lvl = logging.INFO

    logging.basicConfig(level=lvl, handlers=handlers, force=force)
    _name = logging.getLevelName(lvl)
    logging.getLogger("dechat").trace(
        "Logging configured: level=%s file=%s format=%s console=%s rotate=%s backup=%s",
        _name, str(log_path), ("json" if as_json else "plain"),
        to_console, rotate_max_bytes, backup_count
    )
    return logging.getLogger("dechat")


def get_logger(name: Optional[str] = None) -> logging.Logger:
    base = "dechat" if not name else name
    return logging.getLogger(base)


# =========================
# 2) Convenience APIs
# =========================

def export_log_bundle(path: str = "dechat_logs_bundle.zip") -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)

    files_abs: dict[Path, Path] = {}
    def _add(p: Path):
        if p.exists():
            files_abs.setdefault(p.resolve(), p)

    root = logging.getLogger()
    for h in list(root.handlers):
        if isinstance(h, RotatingFileHandler):
            h.flush()
            p = Path(getattr(h, "baseFilename"))
            _add(p)
            for bp in p.parent.glob(p.name + ".*"):
                if bp.is_file():
                    _add(bp)

    base = Path(CFG.LOG_PATH)
    if base.parent.exists():
        _add(base)
        for bp in base.parent.glob(base.name + ".*"):
            if bp.is_file():
                _add(bp)

    with zipfile.ZipFile(out, "w", zipfile.ZIP_DEFLATED) as z:
        z.writestr("log_info.txt", "\n".join([
            f"Python Version : {platform.python_version()}",
            f"Operation System : {platform.platform()}",
            f"Mode : {CFG.MODE}",
            f"Log Level : {CFG.LOG_LEVEL}",
            f"Log Format : {CFG.LOG_FORMAT}",
            f"Log Rate Limit/sec : {CFG.LOG_RATE_LIMIT_SECONDS}",
        ]))
        for rp, p in sorted(files_abs.items(), key=lambda kv: (kv[1].stem, kv[1].suffix)):
            z.write(rp, p.name)
    return out.resolve()
