import argparse
import asyncio
from collections.abc import Sequence


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mark ingestion events stuck in processing as retryable")
    parser.add_argument(
        "--stale-minutes",
        type=int,
        default=None,
        help="Age threshold in minutes (defaults to RECONCILE_STALE_MINUTES)",
    )
    args = parser.parse_args(argv)
    if args.stale_minutes is not None and args.stale_minutes < 1:
        parser.error("--stale-minutes must be >= 1")
    return args


async def run_reconciliation(stale_minutes: int) -> int:
    from storefront_ingest.db.repositories.ingestion_events import EventLedger
    from storefront_ingest.db.session import SessionLocal
    from storefront_ingest.services.reconciliation import reconcile_stale_events

    async with SessionLocal() as session:
        report = await reconcile_stale_events(EventLedger(session), older_than_minutes=stale_minutes)
    return report.reclaimed


def main(argv: Sequence[str] | None = None) -> int:
    from storefront_ingest.core.config import get_settings
    from storefront_ingest.core.logging import configure_logging

    args = parse_args(argv)
    configure_logging()
    stale_minutes = args.stale_minutes or get_settings().RECONCILE_STALE_MINUTES
    count = asyncio.run(run_reconciliation(stale_minutes))
    print(f"ingestion reconciliation completed; reclaimed_events={count}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
