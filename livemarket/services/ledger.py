"""Row-scoped transaction helpers for the ledger tables."""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from livemarket.errors import ConflictError, NotFoundError
from livemarket.models import Auction, EscrowTransaction

logger = logging.getLogger(__name__)


def lock_auction(db: Session, auction_id: int) -> Auction:
    """Re-read an auction with a write-intent lock, refreshing any cached copy."""
    auction = (
        db.query(Auction)
        .filter(Auction.id == auction_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not auction:
        raise NotFoundError("Auction", auction_id)
    return auction


def lock_escrow(db: Session, escrow_id: int) -> EscrowTransaction:
    escrow = (
        db.query(EscrowTransaction)
        .filter(EscrowTransaction.id == escrow_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not escrow:
        raise NotFoundError("Escrow", escrow_id)
    return escrow


def lock_escrow_by_hold_ref(db: Session, hold_ref: str) -> EscrowTransaction | None:
    return (
        db.query(EscrowTransaction)
        .filter(EscrowTransaction.processor_hold_ref == hold_ref)
        .with_for_update()
        .populate_existing()
        .first()
    )


@contextmanager
def row_transaction(db: Session, resource: str) -> Iterator[Session]:
    """Commit on success; roll back on any error.

    A version mismatch or uniqueness race at flush becomes ConflictError so the
    caller retries with fresh state.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        logger.warning("Concurrent update detected on %s: %s", resource, exc)
        raise ConflictError(f"{resource} was modified concurrently; retry with fresh state") from exc
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Integrity conflict on %s: %s", resource, exc.orig)
        raise ConflictError(f"{resource} was modified concurrently; retry with fresh state") from exc
    except Exception:
        db.rollback()
        raise
