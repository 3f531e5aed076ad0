# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: see REFERENCES.md
import os, threading, lmdb
from typing import Dict, Iterator, List, Optional

from ..utils import config as CFG

# ---------------- Logger ----------------
from ..utils.dechat_logging import get_ctx_logger
log = get_ctx_logger("dechat.storage(kv)")


class KVStore:
    """String key -> string value store shared by identity, contacts and rooms."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def put(self, key: str, val: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def clear(self) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryStore(KVStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._lock = threading.RLock()
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, val: str) -> None:
        with self._lock:
            self._data[key] = str(val)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def clear(self) -> int:
        with self._lock:
            n = len(self._data)
            self._data.clear()
            return n


class LmdbStore(KVStore):
    def __init__(self, path: Optional[str] = None, db_name: Optional[str] = None,
                 map_size: Optional[int] = None):
        self.path = path or CFG.DB_DIR
        self.db_name = db_name or CFG.KV_DB_NAME
        os.makedirs(self.path, exist_ok=True)
        self._env = lmdb.open(
            self.path,
            map_size=int(map_size or CFG.LMDB_MAP_SIZE_INIT),
            max_dbs=int(CFG.LMDB_MAX_DBS),
            subdir=True,
            create=True,
            lock=True,
        )
        self._db = self._env.open_db(self.db_name.encode("utf-8"), create=True)
        log.debug("[LmdbStore] opened %s (db=%s)", self.path, self.db_name)

    def _grow_map(self) -> int:
        info = self._env.info()
        cur = int(info.get("map_size", 0) or 0)
        # Double, capped by MAX
        new = min(max(cur * 2, cur + (cur // 2)), int(CFG.LMDB_MAP_SIZE_MAX))
        if new <= cur:
            raise lmdb.MapFullError("LMDB map size cap reached")
        self._env.set_mapsize(new)
        log.info("[LmdbStore] map size grown %s -> %s", cur, new)
        return new

    def _write(self, fn) -> None:
        try:
            with self._env.begin(db=self._db, write=True) as txn:
                fn(txn)
        except lmdb.MapFullError:
            self._grow_map()
            with self._env.begin(db=self._db, write=True) as txn:
                fn(txn)

    def get(self, key: str) -> Optional[str]:
        with self._env.begin(db=self._db, write=False) as txn:
            raw = txn.get(key.encode("utf-8"))
        return raw.decode("utf-8") if raw is not None else None

    def put(self, key: str, val: str) -> None:
        k, v = key.encode("utf-8"), str(val).encode("utf-8")
        self._write(lambda txn: txn.put(k, v))

    def delete(self, key: str) -> None:
        k = key.encode("utf-8")
        self._write(lambda txn: txn.delete(k))

    def _iter_prefix(self, prefix: bytes) -> Iterator[bytes]:
        with self._env.begin(db=self._db, write=False) as txn:
            with txn.cursor() as cur:
                positioned = cur.set_range(prefix) if prefix else cur.first()
                if not positioned:
                    return
                for k in cur.iternext(keys=True, values=False):
                    if not k.startswith(prefix):
                        break
                    yield bytes(k)

    def keys(self, prefix: str = "") -> List[str]:
        return [k.decode("utf-8") for k in self._iter_prefix(prefix.encode("utf-8"))]

    def clear(self) -> int:
        with self._env.begin(db=self._db, write=True) as txn:
            n = int(txn.stat(self._db).get("entries", 0) or 0)
            txn.drop(self._db, delete=False)
        return n

    def close(self) -> None:
        self._env.close()


def open_store(backend: Optional[str] = None, path: Optional[str] = None) -> KVStore:
    backend = (backend or CFG.KV_BACKEND).lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "lmdb":
        return LmdbStore(path)
    raise ValueError(f"unknown KV backend: {backend}")
