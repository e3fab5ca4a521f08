# cli.py
"""
Command line entry point.

    dundabets serve [--host H] [--port P]
    dundabets export [--out FILE]
    dundabets import FILE
    dundabets rounds [--limit N] [--room ROOM]
    dundabets verify --server-seed S --client-seed C --nonce N [--edge E] [--crash-point X]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from app import configure_logging, create_app
from db import LedgerStore
from errors import BackupError
from fairness import derive_crash_point, verify_round
from settings import DATABASE_URL, DEFAULT_CLIENT_SEED, DEFAULT_HOUSE_EDGE, ROOT_IDENTITY
from utils import format_balance, format_multiplier, format_timestamp

logger = logging.getLogger("dundabets.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dundabets", description="DundaBets crash game server")
    parser.add_argument("--database-url", default=DATABASE_URL)
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP API and the round loops")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    export = sub.add_parser("export", help="write a JSON backup")
    export.add_argument("--out", type=Path, help="file to write (default: stdout)")
    export.add_argument("--actor", default=ROOT_IDENTITY)

    restore = sub.add_parser("import", help="replace the database with a JSON backup")
    restore.add_argument("file", type=Path)
    restore.add_argument("--actor", default=ROOT_IDENTITY)

    rounds = sub.add_parser("rounds", help="print recent rounds")
    rounds.add_argument("--limit", type=int, default=20)
    rounds.add_argument("--room")

    verify = sub.add_parser("verify", help="recompute a crash point from revealed seeds")
    verify.add_argument("--server-seed", required=True)
    verify.add_argument("--client-seed", default=DEFAULT_CLIENT_SEED)
    verify.add_argument("--nonce", type=int, required=True)
    verify.add_argument("--edge", type=Decimal, default=DEFAULT_HOUSE_EDGE)
    verify.add_argument("--crash-point", type=Decimal)
    verify.add_argument("--hash", dest="round_hash")
    verify.add_argument("--demo", action="store_true")

    return parser


# =====================================================
# COMMANDS
# =====================================================

async def _export(database_url: str, out: Optional[Path], actor: str) -> None:
    store = LedgerStore(database_url)
    try:
        await store.init()
        payload = await store.export_database(actor)
    finally:
        await store.close()
    if out is None:
        print(payload)
    else:
        out.write_text(payload, encoding="utf-8")
        logger.info(f"Backup written to {out}")


async def _import(database_url: str, path: Path, actor: str) -> None:
    store = LedgerStore(database_url)
    try:
        await store.init()
        await store.import_database(path.read_text(encoding="utf-8"), actor)
    finally:
        await store.close()


async def _rounds(database_url: str, limit: int, room: Optional[str]) -> None:
    store = LedgerStore(database_url)
    try:
        await store.init()
        records = await store.get_round_history(limit, room)
    finally:
        await store.close()

    for r in records:
        flag = " forced" if r.forced else ""
        print(
            f"{format_timestamp(r.created_at)}  {r.round_id}  {r.room:<8} "
            f"{format_multiplier(r.crash_point):>10}  {r.source.value:<5} "
            f"bets={r.bet_count:<3} net={format_balance(r.house_net)}{flag}"
        )


def _verify(args: argparse.Namespace) -> int:
    computed = derive_crash_point(
        args.server_seed, args.client_seed, args.nonce, args.edge, demo=args.demo
    )
    print(f"crash point: {format_multiplier(computed)}")
    if args.crash_point is None:
        return 0
    ok = verify_round(
        args.server_seed,
        args.client_seed,
        args.nonce,
        args.edge,
        args.crash_point,
        round_hash=args.round_hash,
        demo=args.demo,
    )
    print("VALID" if ok else "MISMATCH")
    return 0 if ok else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    if args.command == "serve":
        import uvicorn

        uvicorn.run(create_app(args.database_url), host=args.host, port=args.port)
        return 0
    if args.command == "export":
        asyncio.run(_export(args.database_url, args.out, args.actor))
        return 0
    if args.command == "import":
        try:
            asyncio.run(_import(args.database_url, args.file, args.actor))
        except BackupError as exc:
            logger.error(f"Import failed: {exc}")
            return 1
        return 0
    if args.command == "rounds":
        asyncio.run(_rounds(args.database_url, args.limit, args.room))
        return 0
    return _verify(args)


if __name__ == "__main__":
    sys.exit(main())
