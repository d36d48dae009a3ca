#!/usr/bin/env python3
"""
cli.py — Maintenance CLI for the livequery local cache

Commands:
  inspect   Show row counts per table and the pending operations
  verify    Decode and schema-check every row (exit 1 when any is corrupt)
  purge     Delete rows that fail to decode
  dump      Print the decoded rows of one table as JSON
  keygen    Write a new base64 AES-256 key for an encrypted cache
"""

from __future__ import annotations
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .errors import LiveQueryError
from .persistence import TABLES, SqliteCache


def _fail_with_error(err: LiveQueryError) -> None:
    """Print a structured ``LiveQueryError`` and exit 1."""
    context = f" Context: {err.context}." if err.context else ""
    print(f"ERROR: {err.code}. {err.message}{context}")
    sys.exit(1)


def _cli_error(what: str, why: str, fix: str) -> None:
    """Print a teaching-style CLI error and exit 1."""
    print(f"ERROR: {what}. {why}. Fix: {fix}.")
    sys.exit(1)


def _read_key(args: argparse.Namespace) -> Optional[str]:
    if not getattr(args, "key_file", None):
        return None
    key_path = Path(args.key_file)
    if not key_path.exists():
        _cli_error(
            f"Key file not found: {key_path}",
            "an encrypted cache cannot be decoded without its key",
            "pass the file written by `livequery keygen` or the key used by the engine",
        )
    return key_path.read_text(encoding="utf-8").strip()


def _open_cache(args: argparse.Namespace) -> SqliteCache:
    db_path = Path(args.db)
    if not db_path.exists():
        _cli_error(
            f"Cache database not found: {db_path}",
            "the path does not point at a livequery cache file",
            "check the persistence_path in the engine configuration",
        )
    try:
        return SqliteCache(db_path, _read_key(args))
    except LiveQueryError as err:
        _fail_with_error(err)
        raise  # unreachable


def cmd_inspect(args: argparse.Namespace) -> None:
    """Handle ``livequery inspect``."""
    cache = _open_cache(args)
    print(f"Cache: {cache.db_path}")
    for table, count in cache.counts().items():
        print(f"  {table:<14} {count}")

    pending = []
    corrupt = 0
    for table, key, data, error in cache.scan():
        if error is not None:
            corrupt += 1
        elif table == "operation_log":
            pending.append(data)

    pending.sort(key=lambda op: (op["created_at"], op.get("seq", 0)))
    print(f"\nPending operations: {len(pending)}")
    for op in pending:
        target = op.get("target_identity")
        if target is None:
            target = op.get("temp_identity")
        print(f"  {op['correlation_id']}  {op['state']:<10} {op['kind']:<7} {op['collection']}:{target}")
    if corrupt:
        print(f"\nWARNING: {corrupt} corrupt row(s). Run `livequery verify` for details.")


def cmd_verify(args: argparse.Namespace) -> None:
    """Handle ``livequery verify``. Exits 1 when any row is corrupt."""
    cache = _open_cache(args)
    print(f"Verifying cache: {cache.db_path}")
    checked = 0
    failures: List[str] = []
    for _, _, _, error in cache.scan():
        checked += 1
        if error is not None:
            failures.append(str(error))

    for failure in failures:
        print(f"  FAIL {failure}")
    if failures:
        _cli_error(
            f"{len(failures)} of {checked} rows failed verification",
            "corrupt rows are dropped on the next hydrate and refetched from the remote store",
            "run `livequery purge` to delete them now, or check the --key-file",
        )
    print(f"PASS: {checked} rows decoded and validated.")


def cmd_purge(args: argparse.Namespace) -> None:
    """Handle ``livequery purge``."""
    cache = _open_cache(args)
    removed = cache.purge_corrupt()
    for label in removed:
        print(f"  removed {label}")
    print(f"Purged {len(removed)} corrupt row(s).")


def cmd_dump(args: argparse.Namespace) -> None:
    """Handle ``livequery dump``."""
    cache = _open_cache(args)
    rows = {}
    for table, key, data, error in cache.scan():
        if table != args.table:
            continue
        rows[key] = data if error is None else {"error": error.to_dict()}
    print(json.dumps(rows, indent=2, sort_keys=True))


def cmd_keygen(args: argparse.Namespace) -> None:
    """Handle ``livequery keygen``."""
    out = Path(args.out)
    if out.exists() and not args.force:
        _cli_error(
            f"Refusing to overwrite {out}",
            "replacing a key makes every row encrypted with it unreadable",
            "choose another path or pass --force",
        )
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(SqliteCache.generate_key() + "\n", encoding="utf-8")
    print(f"Wrote AES-256 key to {out}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="livequery", description="livequery local cache maintenance")
    parser.add_argument(
        "--log-level", default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # inspect
    p_inspect = sub.add_parser("inspect", help="Show row counts and pending operations")
    p_inspect.add_argument("db", help="Path to the cache database")
    p_inspect.add_argument("--key-file", help="File holding the base64 encryption key")

    # verify
    p_verify = sub.add_parser("verify", help="Decode and validate every row")
    p_verify.add_argument("db", help="Path to the cache database")
    p_verify.add_argument("--key-file", help="File holding the base64 encryption key")

    # purge
    p_purge = sub.add_parser("purge", help="Delete rows that fail to decode")
    p_purge.add_argument("db", help="Path to the cache database")
    p_purge.add_argument("--key-file", help="File holding the base64 encryption key")

    # dump
    p_dump = sub.add_parser("dump", help="Print decoded rows of one table")
    p_dump.add_argument("db", help="Path to the cache database")
    p_dump.add_argument("--table", required=True, choices=sorted(TABLES))
    p_dump.add_argument("--key-file", help="File holding the base64 encryption key")

    # keygen
    p_keygen = sub.add_parser("keygen", help="Write a new encryption key")
    p_keygen.add_argument("--out", required=True, help="Path of the key file to write")
    p_keygen.add_argument("--force", action="store_true", help="Overwrite an existing key file")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entrypoint."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    if args.command == "inspect": cmd_inspect(args)
    elif args.command == "verify": cmd_verify(args)
    elif args.command == "purge": cmd_purge(args)
    elif args.command == "dump": cmd_dump(args)
    elif args.command == "keygen": cmd_keygen(args)


if __name__ == "__main__":
    main()
