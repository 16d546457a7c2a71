"""Periodic jobs: expired-auction close and escrow auto-release.

Each job is single-flight per process; an overlapping tick is skipped.
"""

import asyncio
import logging
import threading
from typing import Callable

from livemarket.config import settings
from livemarket.models.database import SessionLocal
from livemarket.services import bidding, escrow, orders
from livemarket.services.payment_processor import PaymentProcessor, get_payment_processor

logger = logging.getLogger(__name__)

_auto_release_lock = threading.Lock()
_auction_close_lock = threading.Lock()


def run_auto_release(
    session_factory: Callable = SessionLocal,
    processor: PaymentProcessor | None = None,
) -> int | None:
    """Returns the number released, or None when a previous run is still going."""
    if not _auto_release_lock.acquire(blocking=False):
        logger.warning("Auto-release sweep already running, skipping this tick")
        return None
    try:
        db = session_factory()
        try:
            return escrow.process_auto_release(db, processor or get_payment_processor())
        finally:
            db.close()
    finally:
        _auto_release_lock.release()


def run_auction_close(session_factory: Callable = SessionLocal) -> int | None:
    """Close expired auctions, then open an order for every win that lacks one.

    The order pass also picks up auctions ended by a bid (sudden death or a
    late bid), which never go through the close sweep.
    """
    if not _auction_close_lock.acquire(blocking=False):
        logger.warning("Auction close sweep already running, skipping this tick")
        return None
    try:
        db = session_factory()
        try:
            outcomes = bidding.close_expired_auctions(db)
            opened = orders.open_missing_orders(db)
            if outcomes or opened:
                logger.info("Auction close sweep: %s closed, %s orders opened", len(outcomes), len(opened))
            return len(outcomes)
        finally:
            db.close()
    finally:
        _auction_close_lock.release()


async def _run_periodically(name: str, interval_seconds: int, job: Callable) -> None:
    while True:
        try:
            await asyncio.to_thread(job)
        except Exception:
            logger.exception("Job %s failed", name)
        await asyncio.sleep(interval_seconds)


def start_background_jobs() -> list[asyncio.Task]:
    logger.info(
        "Starting background jobs (auction close every %ss, auto-release every %ss)",
        settings.AUCTION_CLOSE_INTERVAL_SECONDS,
        settings.AUTO_RELEASE_INTERVAL_SECONDS,
    )
    return [
        asyncio.create_task(
            _run_periodically("auction-close", settings.AUCTION_CLOSE_INTERVAL_SECONDS, run_auction_close)
        ),
        asyncio.create_task(
            _run_periodically("escrow-auto-release", settings.AUTO_RELEASE_INTERVAL_SECONDS, run_auto_release)
        ),
    ]
