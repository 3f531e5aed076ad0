# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Identity and contacts backup CLI for Dechat

import argparse
import getpass
import os
import sys
import time

from dechat.storage.kv import open_store
from dechat.utils import config as CFG
from dechat.utils.dechat_logging import setup_logging
from dechat.utils.errors import BackupError, StoreCorrupted
from dechat.wallet.backup import RESTORE_MODES, is_sealed, make_backup, restore_backup, seal_backup
from dechat.wallet.identity import TrustStore


def _default_out() -> str:
    return os.path.join(os.getcwd(), f"{CFG.BACKUP_PREFIX}-{time.strftime('%Y%m%d-%H%M%S')}.json")


def cmd_export(store, args) -> int:
    out = args.out or _default_out()
    text = make_backup(store)
    if args.encrypt:
        pwd = getpass.getpass("Backup password: ")
        if pwd != getpass.getpass("Repeat password: "):
            print("Passwords do not match.")
            return 1
        text = seal_backup(text, pwd)
    with open(out, "w", encoding="utf-8") as f:
        f.write(text)
    try:
        os.chmod(out, 0o600)
    except OSError:
        pass
    print(f"Backup written to {out}")
    print("It contains your secret key. Keep it offline.")
    return 0


def cmd_restore(store, args) -> int:
    with open(args.file, "r", encoding="utf-8") as f:
        text = f.read()
    if args.mode == "replace" and not args.yes:
        ans = input("replace wipes every local key, rooms included. Continue? [y/N] ")
        if ans.strip().lower() not in ("y", "yes"):
            print("Aborted.")
            return 1
    pwd = getpass.getpass("Backup password: ") if is_sealed(text) else None
    summary = restore_backup(store, text, mode=args.mode, password=pwd)
    ident = TrustStore(store).get_or_create_identity()
    print(f"Restored ({summary['mode']}): identity={'yes' if summary['identity'] else 'kept'}, "
          f"contacts={summary['contacts']}")
    for fp in summary["conflicts"]:
        print(f"  kept local key for {fp}: backup key differs")
    print(f"You are {ident.fingerprint}")
    return 0


def cmd_whoami(store, args) -> int:
    trust = TrustStore(store)
    ident = trust.get_or_create_identity()
    print(f"fingerprint: {ident.fingerprint}")
    if args.contacts:
        for fp in trust.list_contacts():
            print(f"  {fp}")
    return 0


def main():
    ap = argparse.ArgumentParser(description="Export or restore the Dechat identity and contacts.")
    ap.add_argument("--db", dest="db_dir", default=CFG.DB_DIR, help="LMDB directory (default: from config)")
    ap.add_argument("-v", "--verbose", action="store_true", help="also log to console")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p_exp = sub.add_parser("export", help="write a backup file")
    p_exp.add_argument("-o", "--out", help="output file")
    p_exp.add_argument("--encrypt", action="store_true", help="seal the file with a password")
    p_exp.set_defaults(fn=cmd_export)

    p_res = sub.add_parser("restore", help="apply a backup file")
    p_res.add_argument("file", help="backup file to read")
    p_res.add_argument("--mode", choices=RESTORE_MODES, default="merge")
    p_res.add_argument("-y", "--yes", action="store_true", help="do not ask before replace")
    p_res.set_defaults(fn=cmd_restore)

    p_who = sub.add_parser("whoami", help="print the local fingerprint")
    p_who.add_argument("--contacts", action="store_true", help="also list pinned contacts")
    p_who.set_defaults(fn=cmd_whoami)

    args = ap.parse_args()
    setup_logging(to_console=args.verbose)

    store = open_store("lmdb", args.db_dir)
    try:
        rc = args.fn(store, args)
    except (BackupError, StoreCorrupted) as exc:
        print(f"error: {exc.message}")
        rc = 2
    except OSError as exc:
        print(f"error: {exc}")
        rc = 2
    finally:
        store.close()
    sys.exit(rc)


if __name__ == "__main__":
    main()
