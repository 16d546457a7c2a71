from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import text

from livemarket.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from livemarket.models import Bid, ProxyBid
from livemarket.models.auction import (
    AUCTION_ACTIVE,
    AUCTION_CANCELLED,
    AUCTION_ENDED,
    AUCTION_PENDING,
    MODE_SUDDEN_DEATH,
)
from livemarket.services import bidding, ledger
from livemarket.services.clock import as_utc
from livemarket.services.events import AuctionEndedWithoutSale, AuctionWon, BidderOutbid, event_bus


def _winning_bids(db, auction_id):
    return db.query(Bid).filter(Bid.auction_id == auction_id, Bid.is_winning.is_(True)).all()


def test_first_bid_sets_price_and_leader(db, auction, bidder_a, now):
    outcome = bidding.place_bid(db, bidder_a.id, auction.id, Decimal("55.00"), now=now)

    db.refresh(auction)
    assert outcome.leader_id == bidder_a.id
    assert outcome.price == Decimal("55.00")
    assert auction.current_bid == Decimal("55.00")
    assert auction.current_bidder_id == bidder_a.id
    assert auction.bid_count == 1
    winning = _winning_bids(db, auction.id)
    assert len(winning) == 1
    assert winning[0].id == outcome.bid_id
    assert winning[0].is_proxy is False


def test_accepts_string_amounts(db, auction, bidder_a, now):
    outcome = bidding.place_bid(db, bidder_a.id, auction.id, "55.5", now=now)
    assert outcome.price == Decimal("55.50")


def test_proxy_war_through_the_ledger(db, auction, bidder_a, bidder_b, bidder_c, now):
    bidding.place_bid(db, bidder_a.id, auction.id, Decimal("55.00"), now=now)
    unchanged = bidding.register_max_bid(
        db, bidder_a.id, auction.id, Decimal("100.00"), now=now + timedelta(seconds=1)
    )
    assert unchanged.bid_id is None

    bidding.place_bid(db, bidder_b.id, auction.id, Decimal("60.00"), now=now + timedelta(seconds=2))
    db.refresh(auction)
    assert auction.current_bid == Decimal("61.00")
    assert auction.current_bidder_id == bidder_a.id
    assert auction.bid_count == 2

    bidding.register_max_bid(db, bidder_c.id, auction.id, Decimal("150.00"), now=now + timedelta(seconds=3))
    db.refresh(auction)
    assert auction.current_bid == Decimal("101.00")
    assert auction.current_bidder_id == bidder_c.id
    assert auction.bid_count == 3

    history = bidding.get_auction_bids(db, auction.id)
    assert [(b.bidder_id, b.amount, b.is_proxy) for b in history] == [
        (bidder_c.id, Decimal("101.00"), True),
        (bidder_a.id, Decimal("100.00"), True),
        (bidder_a.id, Decimal("61.00"), True),
        (bidder_b.id, Decimal("60.00"), False),
        (bidder_a.id, Decimal("55.00"), False),
    ]
    assert [b.is_winning for b in history] == [True, False, False, False, False]

    a_proxy = db.query(ProxyBid).filter(ProxyBid.user_id == bidder_a.id).one()
    assert a_proxy.is_active is False
    assert a_proxy.current_proxy_amount == Decimal("100.00")
    c_proxy = db.query(ProxyBid).filter(ProxyBid.user_id == bidder_c.id).one()
    assert c_proxy.is_active is True
    assert c_proxy.current_proxy_amount == Decimal("101.00")


def test_rejected_bid_changes_nothing(db, auction, bidder_a, bidder_b, now):
    bidding.place_bid(db, bidder_a.id, auction.id, Decimal("55.00"), now=now)

    with pytest.raises(ValidationError):
        bidding.place_bid(db, bidder_b.id, auction.id, Decimal("56.00"), now=now)

    db.refresh(auction)
    assert auction.bid_count == 1
    assert auction.current_bidder_id == bidder_a.id
    assert db.query(Bid).count() == 1


def test_place_bid_unknown_user_or_auction(db, auction, bidder_a, now):
    with pytest.raises(NotFoundError, match="User 999"):
        bidding.place_bid(db, 999, auction.id, Decimal("60.00"), now=now)
    with pytest.raises(NotFoundError, match="Auction 999"):
        bidding.place_bid(db, bidder_a.id, 999, Decimal("60.00"), now=now)


def test_re_registering_max_bid_replaces_the_row(db, auction, bidder_a, bidder_b, now):
    bidding.place_bid(db, bidder_b.id, auction.id, Decimal("55.00"), now=now)
    bidding.register_max_bid(db, bidder_a.id, auction.id, Decimal("70.00"), now=now)
    bidding.register_max_bid(db, bidder_a.id, auction.id, Decimal("80.00"), now=now + timedelta(seconds=1))

    proxies = db.query(ProxyBid).filter(ProxyBid.user_id == bidder_a.id).all()
    assert len(proxies) == 1
    assert proxies[0].max_amount == Decimal("80.00")
    assert [p.id for p in bidding.get_user_max_bids(db, bidder_a.id)] == [proxies[0].id]


def test_cancel_max_bid(db, auction, bidder_a, bidder_b, now):
    bidding.register_max_bid(db, bidder_a.id, auction.id, Decimal("70.00"), now=now)
    proxy = db.query(ProxyBid).one()

    with pytest.raises(ForbiddenError):
        bidding.cancel_max_bid(db, bidder_b.id, proxy.id)
    with pytest.raises(NotFoundError):
        bidding.cancel_max_bid(db, bidder_a.id, 999)

    cancelled = bidding.cancel_max_bid(db, bidder_a.id, proxy.id)
    assert cancelled.is_active is False
    assert bidding.get_user_max_bids(db, bidder_a.id) == []


def test_get_user_bids_newest_first(db, make_auction, bidder_a, now):
    first = make_auction()
    second = make_auction(title="Record player")
    bidding.place_bid(db, bidder_a.id, first.id, Decimal("55.00"), now=now)
    bidding.place_bid(db, bidder_a.id, second.id, Decimal("60.00"), now=now + timedelta(seconds=1))

    bids = bidding.get_user_bids(db, bidder_a.id)
    assert [b.auction_id for b in bids] == [second.id, first.id]


def test_auction_closed_while_bid_in_flight_is_a_conflict(db, auction, bidder_a, now, monkeypatch):
    real_lock = ledger.lock_auction

    def close_then_lock(session, auction_id):
        session.connection().execute(
            text("UPDATE auctions SET status = 'ended' WHERE id = :id"), {"id": auction_id}
        )
        return real_lock(session, auction_id)

    monkeypatch.setattr("livemarket.services.bidding.lock_auction", close_then_lock)

    with pytest.raises(ConflictError, match="closed while the bid was in flight"):
        bidding.place_bid(db, bidder_a.id, auction.id, Decimal("60.00"), now=now)
    assert db.query(Bid).count() == 0


def test_lost_update_surfaces_as_conflict(db, auction, bidder_a, now, monkeypatch):
    real_lock = ledger.lock_auction

    def lock_then_race(session, auction_id):
        locked = real_lock(session, auction_id)
        session.connection().execute(
            text("UPDATE auctions SET version = version + 1 WHERE id = :id"), {"id": auction_id}
        )
        return locked

    monkeypatch.setattr("livemarket.services.bidding.lock_auction", lock_then_race)

    with pytest.raises(ConflictError):
        bidding.place_bid(db, bidder_a.id, auction.id, Decimal("60.00"), now=now)

    monkeypatch.undo()
    db.refresh(auction)
    assert auction.bid_count == 0
    assert db.query(Bid).count() == 0


def test_late_bid_closes_auction_and_is_rejected(db, auction, bidder_a, bidder_b, now, published):
    bidding.place_bid(db, bidder_a.id, auction.id, Decimal("55.00"), now=now)

    with pytest.raises(ValidationError, match="ended"):
        bidding.place_bid(db, bidder_b.id, auction.id, Decimal("60.00"), now=now + timedelta(hours=2))

    db.refresh(auction)
    assert auction.status == AUCTION_ENDED
    assert auction.winner_id == bidder_a.id
    assert auction.bid_count == 1
    assert any(isinstance(e, AuctionWon) for e in published)


def test_bid_near_the_end_extends_timer(db, auction, bidder_a, now):
    original_end = as_utc(auction.ends_at)
    placed_at = original_end - timedelta(seconds=10)

    outcome = bidding.place_bid(db, bidder_a.id, auction.id, Decimal("55.00"), now=placed_at)

    db.refresh(auction)
    assert outcome.timer_extended is True
    assert as_utc(auction.ends_at) == original_end + timedelta(seconds=30)
    assert as_utc(auction.original_ends_at) == original_end
    assert auction.timer_extensions == 1


def test_sudden_death_bid_ends_auction(db, make_auction, bidder_a, now, published):
    auction = make_auction(mode=MODE_SUDDEN_DEATH, ends_at=now + timedelta(seconds=20))

    outcome = bidding.place_bid(db, bidder_a.id, auction.id, Decimal("55.00"), now=now)

    db.refresh(auction)
    assert outcome.auction_ended is True
    assert auction.status == AUCTION_ENDED
    assert auction.winner_id == bidder_a.id
    won = [e for e in published if isinstance(e, AuctionWon)]
    assert won == [AuctionWon(auction.id, bidder_a.id, auction.seller_id, Decimal("55.00"))]
    assert outcome.won == won[0]


def test_outbid_events_follow_commit(db, auction, bidder_a, bidder_b, now, published):
    bidding.place_bid(db, bidder_a.id, auction.id, Decimal("55.00"), now=now)
    bidding.place_bid(db, bidder_b.id, auction.id, Decimal("60.00"), now=now)

    outbid = [e for e in published if isinstance(e, BidderOutbid)]
    assert outbid == [BidderOutbid(auction.id, bidder_a.id, Decimal("60.00"))]


def test_failing_subscriber_does_not_undo_the_bid(db, auction, bidder_a, bidder_b, now):
    def broken(event):
        raise RuntimeError("notification service down")

    event_bus.subscribe(BidderOutbid, broken)
    try:
        bidding.place_bid(db, bidder_a.id, auction.id, Decimal("55.00"), now=now)
        bidding.place_bid(db, bidder_b.id, auction.id, Decimal("60.00"), now=now)
    finally:
        event_bus.unsubscribe(BidderOutbid, broken)

    db.refresh(auction)
    assert auction.bid_count == 2
    assert auction.current_bidder_id == bidder_b.id


def test_close_auction_with_winner_is_idempotent(db, auction, bidder_a, now, published):
    bidding.place_bid(db, bidder_a.id, auction.id, Decimal("55.00"), now=now)

    first = bidding.close_auction(db, auction.id, now=now)
    second = bidding.close_auction(db, auction.id, now=now)

    assert first.already_closed is False
    assert second.already_closed is True
    assert first.won == second.won
    assert first.won.final_price == Decimal("55.00")
    assert len([e for e in published if isinstance(e, AuctionWon)]) == 1
    db.refresh(auction)
    assert auction.status == AUCTION_ENDED
    assert auction.winner_id == bidder_a.id


def test_close_auction_below_reserve_has_no_winner(db, make_auction, bidder_a, now, published):
    auction = make_auction(reserve_price=Decimal("500.00"))
    bidding.place_bid(db, bidder_a.id, auction.id, Decimal("55.00"), now=now)

    outcome = bidding.close_auction(db, auction.id, now=now)

    assert outcome.won is None
    db.refresh(auction)
    assert auction.winner_id is None
    assert published[-1] == AuctionEndedWithoutSale(auction.id, auction.seller_id, reserve_met=False)


def test_close_auction_deactivates_proxies(db, auction, bidder_a, now):
    bidding.register_max_bid(db, bidder_a.id, auction.id, Decimal("90.00"), now=now)

    bidding.close_auction(db, auction.id, now=now)

    assert db.query(ProxyBid).filter(ProxyBid.is_active.is_(True)).count() == 0


def test_start_and_cancel_lifecycle(db, make_auction, seller, bidder_a, now):
    auction = make_auction(status=AUCTION_PENDING)

    started = bidding.start_auction(db, auction.id, now=now)
    assert started.status == AUCTION_ACTIVE
    with pytest.raises(ValidationError):
        bidding.start_auction(db, auction.id, now=now)

    with pytest.raises(ForbiddenError):
        bidding.cancel_auction(db, bidder_a.id, auction.id)
    cancelled = bidding.cancel_auction(db, seller.id, auction.id)
    assert cancelled.status == AUCTION_CANCELLED

    with pytest.raises(ValidationError, match="cancelled"):
        bidding.close_auction(db, auction.id, now=now)


def test_cannot_cancel_auction_with_bids(db, auction, seller, bidder_a, now):
    bidding.place_bid(db, bidder_a.id, auction.id, Decimal("55.00"), now=now)

    with pytest.raises(ValidationError, match="existing bids"):
        bidding.cancel_auction(db, seller.id, auction.id)


def test_close_expired_auctions_only_touches_expired(db, make_auction, bidder_a, now):
    expired = make_auction(ends_at=now - timedelta(minutes=1))
    running = make_auction(title="Still running")

    outcomes = bidding.close_expired_auctions(db, now=now)

    assert [o.auction.id for o in outcomes] == [expired.id]
    db.refresh(running)
    assert running.status == AUCTION_ACTIVE
