import logging

from sqlalchemy.orm import Session

from livemarket.config import settings
from livemarket.errors import ConflictError
from livemarket.models import Auction, Order
from livemarket.models.auction import AUCTION_ENDED
from livemarket.models.order import ORDER_PENDING
from livemarket.services.events import AuctionWon
from livemarket.services.ledger import row_transaction
from livemarket.services.money import to_money

logger = logging.getLogger(__name__)


def create_order_for_win(db: Session, won: AuctionWon) -> Order:
    """Turn a won auction into a pending order. One order per auction."""
    existing = db.query(Order).filter(Order.auction_id == won.auction_id).first()
    if existing:
        logger.info("Order %s already exists for auction %s", existing.id, won.auction_id)
        return existing

    with row_transaction(db, f"order for auction {won.auction_id}"):
        order = Order(
            buyer_id=won.winner_id,
            seller_id=won.seller_id,
            auction_id=won.auction_id,
            total=won.final_price,
            currency=settings.PAYMENT_CURRENCY,
            status=ORDER_PENDING,
        )
        db.add(order)
    logger.info("Order %s created for auction %s (buyer=%s)", order.id, won.auction_id, won.winner_id)
    return order


def unordered_wins(db: Session) -> list[AuctionWon]:
    """Ended auctions with a winner but no order yet.

    Auctions ended by a bid (sudden death, late bid) land here.
    """
    rows = (
        db.query(Auction)
        .outerjoin(Order, Order.auction_id == Auction.id)
        .filter(
            Auction.status == AUCTION_ENDED,
            Auction.winner_id.isnot(None),
            Order.id.is_(None),
        )
        .order_by(Auction.ended_at.asc())
        .all()
    )
    return [
        AuctionWon(
            auction_id=auction.id,
            winner_id=auction.winner_id,
            seller_id=auction.seller_id,
            final_price=to_money(auction.current_bid),
        )
        for auction in rows
    ]


def open_missing_orders(db: Session) -> list[Order]:
    opened = []
    for won in unordered_wins(db):
        try:
            opened.append(create_order_for_win(db, won))
        except ConflictError as exc:
            # Another worker opened it first.
            logger.warning("Skipping order for auction %s: %s", won.auction_id, exc)
    return opened
