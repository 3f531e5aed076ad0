#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of Dechat - see LICENSE
# Refs: see REFERENCES.md

import os
import sys
import argparse
import json

import lmdb

from dechat.utils.config import DB_DIR, KV_DB_NAME, SK_IDENTITY, SK_CONTACTS, SK_ROOM_PREFIX


def _open(db_dir: str):
    env = lmdb.open(db_dir, readonly=True, max_dbs=8, lock=False, subdir=True)
    try:
        dbi = env.open_db(KV_DB_NAME.encode('utf-8'), create=False)
    except lmdb.NotFoundError:
        env.close()
        return None, None
    return env, dbi


def _items(env, dbi, prefix: bytes = b''):
    with env.begin(db=dbi, write=False) as txn:
        with txn.cursor() as cur:
            ok = cur.set_range(prefix) if prefix else cur.first()
            if not ok:
                return
            for k, v in cur.iternext():
                if not k.startswith(prefix):
                    break
                yield k.decode('utf-8', 'replace'), v.decode('utf-8', 'replace')


def _rooms(env, dbi):
    rooms = {}
    for key, val in _items(env, dbi, SK_ROOM_PREFIX.encode('utf-8')):
        rest = key[len(SK_ROOM_PREFIX):]
        room, _, field = rest.rpartition(':')
        if not room:
            continue
        rooms.setdefault(room, {})[field] = val
    return rooms


def _json_list(raw):
    try:
        arr = json.loads(raw or '[]')
    except ValueError:
        return []
    return arr if isinstance(arr, list) else []


def main():
    ap = argparse.ArgumentParser(description='LMDB quick stats for Dechat.')
    ap.add_argument('--db', dest='db_dir', default=DB_DIR, help='LMDB directory (default: from config)')
    ap.add_argument('--room', dest='room', help='Only show this room')
    ap.add_argument('--members', action='store_true', help='List member and pending fingerprints')
    args = ap.parse_args()

    db_dir = args.db_dir
    if not os.path.isdir(db_dir):
        print(f"DB dir not found: {db_dir}")
        sys.exit(1)

    env, dbi = _open(db_dir)
    if env is None:
        print(f"No '{KV_DB_NAME}' database in {db_dir}")
        sys.exit(1)
    print(f"DB: {db_dir}")

    try:
        with env.begin(db=dbi, write=False) as txn:
            print(f"keys: {txn.stat(dbi).get('entries', 0)}")
            raw_id = txn.get(SK_IDENTITY.encode('utf-8'))
            raw_contacts = txn.get(SK_CONTACTS.encode('utf-8'))
        print(f"identity: {'present' if raw_id else 'missing'}")
        try:
            contacts = json.loads(raw_contacts.decode('utf-8')) if raw_contacts else {}
            print(f"contacts: {len(contacts)}")
        except ValueError:
            print("contacts: unreadable")

        rooms = _rooms(env, dbi)
        if args.room:
            rooms = {k: v for k, v in rooms.items() if k == args.room}
        print(f"rooms: {len(rooms)}")
        for room in sorted(rooms):
            st = rooms[room]
            members = _json_list(st.get('members'))
            pending = _json_list(st.get('pending'))
            print(f"- {room} | keyId: {st.get('keyid') or 'none'} | members: {len(members)} | pending: {len(pending)}")
            if args.members:
                for fp in members:
                    print(f"    member  {fp}")
                for fp in pending:
                    print(f"    pending {fp}")
    finally:
        env.close()


if __name__ == '__main__':
    main()
