import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from livemarket.config import settings
from livemarket.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from livemarket.models import Auction, Bid, ProxyBid, User
from livemarket.models.auction import (
    AUCTION_ACTIVE,
    AUCTION_CANCELLED,
    AUCTION_ENDED,
    AUCTION_PENDING,
)
from livemarket.services import bid_resolver
from livemarket.services.bid_resolver import (
    AuctionSnapshot,
    BidRequest,
    ProxySnapshot,
    Resolution,
    TimerPolicy,
)
from livemarket.services.clock import as_utc, utcnow
from livemarket.services.events import (
    AuctionEndedWithoutSale,
    AuctionWon,
    BidAccepted,
    BidderOutbid,
    event_bus,
)
from livemarket.services.ledger import lock_auction, row_transaction
from livemarket.services.money import to_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BidOutcome:
    auction: Auction
    bid_id: int | None
    leader_id: int | None
    price: Decimal | None
    timer_extended: bool
    auction_ended: bool
    won: AuctionWon | None = None


@dataclass(frozen=True)
class CloseOutcome:
    auction: Auction
    won: AuctionWon | None
    already_closed: bool


def timer_policy() -> TimerPolicy:
    return TimerPolicy(
        threshold=timedelta(seconds=settings.BID_EXTENSION_THRESHOLD_SECONDS),
        extension=timedelta(seconds=settings.BID_EXTENSION_SECONDS),
    )


def snapshot_auction(auction: Auction) -> AuctionSnapshot:
    return AuctionSnapshot(
        status=auction.status,
        starting_bid=to_money(auction.starting_bid),
        current_bid=to_money(auction.current_bid) if auction.current_bid is not None else None,
        current_bidder_id=auction.current_bidder_id,
        bid_count=auction.bid_count or 0,
        minimum_bid_increment=to_money(auction.minimum_bid_increment),
        reserve_price=to_money(auction.reserve_price) if auction.reserve_price is not None else None,
        reserve_met=bool(auction.reserve_met),
        ends_at=as_utc(auction.ends_at),
        original_ends_at=as_utc(auction.original_ends_at),
        timer_extensions=auction.timer_extensions or 0,
        max_timer_extensions=auction.max_timer_extensions,
        mode=auction.mode,
    )


def _active_proxies(db: Session, auction_id: int) -> list[ProxyBid]:
    return (
        db.query(ProxyBid)
        .filter(ProxyBid.auction_id == auction_id, ProxyBid.is_active.is_(True))
        .order_by(ProxyBid.registered_at.asc(), ProxyBid.id.asc())
        .all()
    )


def _require_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User", user_id)
    return user


def _get_auction(db: Session, auction_id: int) -> Auction:
    auction = db.get(Auction, auction_id)
    if not auction:
        raise NotFoundError("Auction", auction_id)
    return auction


def _ensure_still_active(auction: Auction, observed_status: str) -> None:
    if observed_status == AUCTION_ACTIVE and auction.status != AUCTION_ACTIVE:
        raise ConflictError(f"Auction {auction.id} is {auction.status}; it closed while the bid was in flight")


def _apply_resolution(
    db: Session,
    auction: Auction,
    resolution: Resolution,
    proxies: list[ProxyBid],
    placed_at: datetime,
) -> Bid | None:
    if not resolution.changed:
        return None

    db.query(Bid).filter(Bid.auction_id == auction.id, Bid.is_winning.is_(True)).update(
        {Bid.is_winning: False}, synchronize_session=False
    )
    last_bid = None
    for offset, step in enumerate(resolution.steps):
        if last_bid is not None:
            last_bid.is_winning = False
        last_bid = Bid(
            auction_id=auction.id,
            bidder_id=step.bidder_id,
            amount=step.amount,
            is_proxy=step.is_proxy,
            is_winning=True,
            # Distinct timestamps keep the row order stable for ties.
            created_at=placed_at + timedelta(microseconds=offset),
        )
        db.add(last_bid)

    for proxy in proxies:
        if proxy.user_id in resolution.proxy_amounts:
            proxy.current_proxy_amount = resolution.proxy_amounts[proxy.user_id]
        if proxy.user_id in resolution.exhausted_proxies:
            proxy.is_active = False

    auction.current_bid = resolution.price
    auction.current_bidder_id = resolution.leader_id
    auction.bid_count = resolution.bid_count
    auction.reserve_met = resolution.reserve_met
    auction.ends_at = resolution.ends_at
    auction.original_ends_at = resolution.original_ends_at
    auction.timer_extensions = resolution.timer_extensions
    db.flush()
    return last_bid


def _finish_auction(db: Session, auction: Auction, now: datetime) -> AuctionWon | AuctionEndedWithoutSale:
    """Mark an active auction ended inside the caller's transaction."""
    auction.status = AUCTION_ENDED
    auction.ended_at = now
    db.query(ProxyBid).filter(ProxyBid.auction_id == auction.id, ProxyBid.is_active.is_(True)).update(
        {ProxyBid.is_active: False}, synchronize_session=False
    )
    reserve_met = auction.reserve_price is None or (
        auction.current_bid is not None and auction.current_bid >= auction.reserve_price
    )
    if auction.current_bidder_id is not None and auction.current_bid is not None and reserve_met:
        auction.winner_id = auction.current_bidder_id
        return AuctionWon(
            auction_id=auction.id,
            winner_id=auction.current_bidder_id,
            seller_id=auction.seller_id,
            final_price=to_money(auction.current_bid),
        )
    return AuctionEndedWithoutSale(auction_id=auction.id, seller_id=auction.seller_id, reserve_met=bool(reserve_met))


def _won_fact(auction: Auction) -> AuctionWon | None:
    if auction.status != AUCTION_ENDED or auction.winner_id is None:
        return None
    return AuctionWon(
        auction_id=auction.id,
        winner_id=auction.winner_id,
        seller_id=auction.seller_id,
        final_price=to_money(auction.current_bid),
    )


def _resolve_and_persist(
    db: Session,
    user_id: int,
    auction_id: int,
    amount: Decimal,
    *,
    is_max_bid: bool,
    registering: bool,
    now: datetime,
) -> BidOutcome:
    observed = _get_auction(db, auction_id)
    observed_status = observed.status
    ended_event = None
    lazily_closed = False

    with row_transaction(db, f"auction {auction_id}"):
        auction = lock_auction(db, auction_id)
        _ensure_still_active(auction, observed_status)

        ends_at = as_utc(auction.ends_at)
        if auction.status == AUCTION_ACTIVE and ends_at is not None and now >= ends_at:
            ended_event = _finish_auction(db, auction, now)
            lazily_closed = True
        else:
            if is_max_bid:
                _upsert_proxy(db, auction.id, user_id, amount, now)
            proxies = _active_proxies(db, auction.id)
            resolution = bid_resolver.resolve_bid(
                snapshot_auction(auction),
                [ProxySnapshot(p.user_id, to_money(p.max_amount), as_utc(p.registered_at)) for p in proxies],
                BidRequest(bidder_id=user_id, amount=amount, placed_at=now, is_max_bid=is_max_bid),
                timer_policy(),
                enforce_increment=not registering,
            )
            bid = _apply_resolution(db, auction, resolution, proxies, now)
            if resolution.ends_now:
                ended_event = _finish_auction(db, auction, now)

    if lazily_closed:
        logger.info("Auction %s closed lazily on late bid from user %s", auction_id, user_id)
        event_bus.publish(ended_event)
        raise ValidationError("Auction has ended")

    if resolution.timer_extended:
        logger.info(
            "Timer extended for auction %s: ends_at=%s (extension %s/%s)",
            auction.id,
            auction.ends_at,
            auction.timer_extensions,
            auction.max_timer_extensions,
        )
    if resolution.changed:
        logger.info(
            "Bid accepted on auction %s: user=%s leader=%s price=%s bid_count=%s",
            auction.id,
            user_id,
            resolution.leader_id,
            resolution.price,
            resolution.bid_count,
        )
        event_bus.publish(
            BidAccepted(
                auction_id=auction.id,
                bidder_id=user_id,
                leader_id=resolution.leader_id,
                price=resolution.price,
                bid_count=resolution.bid_count,
            )
        )
        outbid = {resolution.outbid_user_id, user_id} - {resolution.leader_id, None}
        for outbid_user_id in sorted(outbid):
            event_bus.publish(BidderOutbid(auction_id=auction.id, user_id=outbid_user_id, price=resolution.price))
    if ended_event is not None:
        logger.info("Auction %s ended by sudden-death bid", auction.id)
        event_bus.publish(ended_event)

    return BidOutcome(
        auction=auction,
        bid_id=bid.id if bid is not None else None,
        leader_id=resolution.leader_id,
        price=resolution.price,
        timer_extended=resolution.timer_extended,
        auction_ended=resolution.ends_now,
        won=ended_event if isinstance(ended_event, AuctionWon) else None,
    )


def _upsert_proxy(db: Session, auction_id: int, user_id: int, max_amount: Decimal, now: datetime) -> ProxyBid:
    proxy = (
        db.query(ProxyBid)
        .filter(ProxyBid.auction_id == auction_id, ProxyBid.user_id == user_id)
        .first()
    )
    if proxy is None:
        proxy = ProxyBid(auction_id=auction_id, user_id=user_id, current_proxy_amount=None)
        db.add(proxy)
    proxy.max_amount = max_amount
    proxy.is_active = True
    proxy.registered_at = now
    db.flush()
    return proxy


def place_bid(
    db: Session,
    user_id: int,
    auction_id: int,
    amount: Decimal | str | int,
    is_max_bid: bool = False,
    now: datetime | None = None,
) -> BidOutcome:
    """Place an explicit bid, or a max bid when ``is_max_bid`` is set.

    Runs as one transaction on the auction row. A lost race surfaces as
    ConflictError; the caller must re-read and decide again.
    """
    now = now or utcnow()
    _require_user(db, user_id)
    return _resolve_and_persist(
        db,
        user_id,
        auction_id,
        to_money(amount),
        is_max_bid=is_max_bid,
        registering=False,
        now=now,
    )


def register_max_bid(
    db: Session,
    user_id: int,
    auction_id: int,
    max_amount: Decimal | str | int,
    now: datetime | None = None,
) -> BidOutcome:
    """Store a proxy ceiling and immediately challenge the current leader with it."""
    now = now or utcnow()
    _require_user(db, user_id)
    return _resolve_and_persist(
        db,
        user_id,
        auction_id,
        to_money(max_amount),
        is_max_bid=True,
        registering=True,
        now=now,
    )


def cancel_max_bid(db: Session, user_id: int, max_bid_id: int) -> ProxyBid:
    with row_transaction(db, f"max bid {max_bid_id}"):
        proxy = db.query(ProxyBid).filter(ProxyBid.id == max_bid_id).with_for_update().first()
        if not proxy:
            raise NotFoundError("Max bid", max_bid_id)
        if proxy.user_id != user_id:
            raise ForbiddenError("Cannot cancel another user's max bid")
        proxy.is_active = False
    logger.info("Max bid %s cancelled by user %s", max_bid_id, user_id)
    return proxy


def get_auction_bids(db: Session, auction_id: int) -> list[Bid]:
    _get_auction(db, auction_id)
    return (
        db.query(Bid)
        .filter(Bid.auction_id == auction_id)
        .order_by(Bid.created_at.desc(), Bid.id.desc())
        .all()
    )


def get_user_bids(db: Session, user_id: int) -> list[Bid]:
    return (
        db.query(Bid)
        .filter(Bid.bidder_id == user_id)
        .order_by(Bid.created_at.desc(), Bid.id.desc())
        .all()
    )


def get_user_max_bids(db: Session, user_id: int) -> list[ProxyBid]:
    return (
        db.query(ProxyBid)
        .filter(ProxyBid.user_id == user_id, ProxyBid.is_active.is_(True))
        .order_by(ProxyBid.registered_at.desc())
        .all()
    )


def get_auction(db: Session, auction_id: int) -> Auction:
    return _get_auction(db, auction_id)


def start_auction(db: Session, auction_id: int, now: datetime | None = None) -> Auction:
    now = now or utcnow()
    with row_transaction(db, f"auction {auction_id}"):
        auction = lock_auction(db, auction_id)
        if auction.status != AUCTION_PENDING:
            raise ValidationError(f"Auction is not pending (status: {auction.status})")
        auction.status = AUCTION_ACTIVE
        auction.started_at = now
    logger.info("Auction %s started", auction_id)
    return auction


def close_auction(db: Session, auction_id: int, now: datetime | None = None) -> CloseOutcome:
    """End an auction. Closing an already-ended auction is a no-op."""
    now = now or utcnow()
    with row_transaction(db, f"auction {auction_id}"):
        auction = lock_auction(db, auction_id)
        if auction.status == AUCTION_ENDED:
            return CloseOutcome(auction=auction, won=_won_fact(auction), already_closed=True)
        if auction.status != AUCTION_ACTIVE:
            raise ValidationError(f"Cannot close auction in status: {auction.status}")
        event = _finish_auction(db, auction, now)

    if isinstance(event, AuctionWon):
        logger.info("Auction %s won by user %s at %s", auction_id, event.winner_id, event.final_price)
    else:
        logger.info("Auction %s ended without a sale (reserve_met=%s)", auction_id, event.reserve_met)
    event_bus.publish(event)
    return CloseOutcome(
        auction=auction,
        won=event if isinstance(event, AuctionWon) else None,
        already_closed=False,
    )


def cancel_auction(db: Session, seller_id: int, auction_id: int) -> Auction:
    with row_transaction(db, f"auction {auction_id}"):
        auction = lock_auction(db, auction_id)
        if auction.seller_id != seller_id:
            raise ForbiddenError("You do not own this auction")
        if auction.status not in {AUCTION_PENDING, AUCTION_ACTIVE}:
            raise ValidationError(f"Cannot cancel auction in status: {auction.status}")
        if auction.bid_count > 0:
            raise ValidationError("Cannot cancel auction with existing bids")
        auction.status = AUCTION_CANCELLED
        auction.ended_at = utcnow()
        db.query(ProxyBid).filter(ProxyBid.auction_id == auction.id).update(
            {ProxyBid.is_active: False}, synchronize_session=False
        )
    logger.info("Auction %s cancelled by seller %s", auction_id, seller_id)
    return auction


def close_expired_auctions(db: Session, now: datetime | None = None) -> list[CloseOutcome]:
    now = now or utcnow()
    expired_ids = [
        auction_id
        for (auction_id,) in db.query(Auction.id)
        .filter(Auction.status == AUCTION_ACTIVE, Auction.ends_at.isnot(None), Auction.ends_at <= now)
        .order_by(Auction.ends_at.asc())
        .all()
    ]
    outcomes = []
    for auction_id in expired_ids:
        try:
            outcomes.append(close_auction(db, auction_id, now=now))
        except (ConflictError, ValidationError) as exc:
            logger.warning("Skipping close of auction %s: %s", auction_id, exc)
    return outcomes
