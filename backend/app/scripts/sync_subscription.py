import argparse
import asyncio

from app.db.session import SessionLocal, init_db
from app.repositories.queue_repository import QueueRepository
from app.services.helius import SubscriptionEditError
from app.services.reconciler import SubscriptionReconciler


async def sync(*, dry_run: bool) -> int:
    await init_db()
    async with SessionLocal() as session:
        reconciler = SubscriptionReconciler(session)
        counts = await QueueRepository(session).count_by_status()
        print(f"Queue: {counts or 'empty'}")
        if dry_run:
            addresses = await reconciler.active_addresses()
            print(f"{len(addresses)} addresses would be pushed:")
            for address in addresses:
                print(f"  {address}")
            return 0
        try:
            async with reconciler.locked():
                addresses = await reconciler.sync_all()
        except SubscriptionEditError as exc:
            print(f"Subscription sync failed: {exc}")
            return 1
    print(f"Platform webhook now monitors {len(addresses)} addresses")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Push every active job address to the platform webhook")
    parser.add_argument("--dry-run", action="store_true", help="Only list the addresses that would be pushed")
    args = parser.parse_args()
    raise SystemExit(asyncio.run(sync(dry_run=args.dry_run)))
