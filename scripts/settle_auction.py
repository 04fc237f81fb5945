"""Operator entry point to settle specific auctions or run one scheduler pass."""

from __future__ import annotations

import argparse
import asyncio
import logging

from auctionhouse.auction.lifecycle import AuctionLifecycle
from auctionhouse.config import get_server_config
from auctionhouse.errors import AuctionRejected, ConcurrencyConflict
from auctionhouse.events.publisher import SettlementPublisher
from auctionhouse.ledger.settlement import SettlementOrchestrator
from auctionhouse.ledger.transfer import build_transfer_ledger
from auctionhouse.scheduler.completion import CompletionScheduler
from auctionhouse.storage import build_storage

logger = logging.getLogger("settle_auction")


async def run(auction_ids: list[str]) -> int:
    config = get_server_config()
    store = build_storage(config)
    ledger = build_transfer_ledger(config)
    orchestrator = SettlementOrchestrator(
        store,
        ledger,
        config.settlement,
        config.ledger.platform_account,
        publisher=SettlementPublisher(config.events.backend, config.events.options),
    )
    exit_code = 0
    try:
        if not auction_ids:
            scheduler = CompletionScheduler(store, orchestrator, AuctionLifecycle(store))
            report = await scheduler.run_once()
            print(report.to_dict())
            return 1 if report.errored else 0
        for auction_id in auction_ids:
            try:
                outcome = await orchestrator.settle(auction_id)
            except (AuctionRejected, ConcurrencyConflict) as exc:
                logger.error("auction %s not settled: %s", auction_id, exc)
                exit_code = 1
                continue
            print(outcome.to_dict())
            if not outcome.success:
                exit_code = 1
    finally:
        await ledger.close()
        await store.close()
    return exit_code


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("auction_ids", nargs="*", help="auctions to settle; omit to settle every due auction")
    args = parser.parse_args()
    logging.basicConfig(level=get_server_config().log_level)
    raise SystemExit(asyncio.run(run(args.auction_ids)))


if __name__ == "__main__":
    main()
