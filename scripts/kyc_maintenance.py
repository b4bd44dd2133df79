"""
KYC maintenance commands.

Runs the same jobs as the in-process scheduler, once, from the command line.

Usage:
    python -m scripts.kyc_maintenance init-db
    python -m scripts.kyc_maintenance expire [--limit N]
    python -m scripts.kyc_maintenance retry-commits [--limit N]
    python -m scripts.kyc_maintenance recover [--limit N]
    python -m scripts.kyc_maintenance stats [--refresh]

Options:
    --limit N  : Maximum sessions to process
    --refresh  : Rebuild statistics from the session table and overwrite the cache
"""
import asyncio
import sys
import argparse
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from onchain_kyc.db.models import Base
from onchain_kyc.db.session import engine
from onchain_kyc.utils.deps import get_orchestrator
from onchain_kyc.utils.redis_pool import close_redis


async def init_db():
    """Create the KYC tables directly (local development; production uses alembic)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("✅ KYC tables created")


async def expire(limit: int):
    count = await get_orchestrator().expire_stale_sessions(limit=limit)
    print(f"⏱️  Expired {count} stale pending session(s)")


async def retry_commits(limit: int):
    count = await get_orchestrator().retry_pending_commits(limit=limit)
    print(f"⛓️  Committed {count} pending compliance flag(s)")


async def recover(limit: int):
    count = await get_orchestrator().recover_in_flight(limit=limit)
    print(f"🔁 Finalized {count} stuck session(s)")


async def stats(refresh: bool):
    orchestrator = get_orchestrator()
    fresh = await orchestrator.rebuild_statistics()
    cached = await orchestrator.stats_cache.get()

    print("📊 Verification statistics")
    print("-" * 40)
    print(f"  total verifications  {fresh.total_verifications:>8,}")
    print(f"  unique users         {fresh.unique_users:>8,}")
    print(f"  consumed nullifiers  {await orchestrator.ledger.count():>8,}")
    print("-" * 40)

    if cached is None:
        print("  cache: empty or disabled")
    elif cached != fresh:
        print(f"  cache: stale ({cached.total_verifications:,} / {cached.unique_users:,})")
    else:
        print("  cache: in sync")

    if refresh:
        await orchestrator.stats_cache.set(fresh)
        print("✅ Cache refreshed")


async def run(args):
    try:
        if args.command == "init-db":
            await init_db()
        elif args.command == "expire":
            await expire(args.limit)
        elif args.command == "retry-commits":
            await retry_commits(args.limit)
        elif args.command == "recover":
            await recover(args.limit)
        elif args.command == "stats":
            await stats(args.refresh)
    finally:
        await close_redis()
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Onchain KYC maintenance jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables without alembic")
    for name, help_text in (
        ("expire", "Expire pending sessions past their TTL"),
        ("retry-commits", "Retry due compliance oracle commits"),
        ("recover", "Finalize sessions stuck in proof_received"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--limit", type=int, default=100, help="Maximum sessions to process")

    stats_cmd = sub.add_parser("stats", help="Show statistics and cache consistency")
    stats_cmd.add_argument(
        "--refresh",
        action="store_true",
        help="Overwrite the cached statistics with a fresh scan"
    )

    args = parser.parse_args()

    asyncio.run(run(args))


if __name__ == "__main__":
    main()
