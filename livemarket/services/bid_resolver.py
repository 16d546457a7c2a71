"""Proxy-bid resolution for a single auction.

Pure functions over snapshots: no session, no clock. The bidding service feeds
in locked auction state and persists whatever comes back.

Resolution follows classic English-auction proxy bidding in one pass. Every
participant contributes one ceiling (the standing leader's price or proxy max,
each active proxy max, the requester's bid or new max). The highest ceiling
leads, earliest registration breaking ties, and pays one increment over the
runner-up, never more than its own ceiling.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from livemarket.errors import ValidationError
from livemarket.models.auction import AUCTION_ACTIVE, MODE_SUDDEN_DEATH

_LEADER_SINCE = datetime.min.replace(tzinfo=timezone.utc)

SOURCE_LEADER = "leader"
SOURCE_PROXY = "proxy"
SOURCE_EXPLICIT = "explicit"


@dataclass(frozen=True)
class AuctionSnapshot:
    status: str
    starting_bid: Decimal
    current_bid: Decimal | None
    current_bidder_id: int | None
    bid_count: int
    minimum_bid_increment: Decimal
    reserve_price: Decimal | None
    reserve_met: bool
    ends_at: datetime | None
    original_ends_at: datetime | None
    timer_extensions: int
    max_timer_extensions: int
    mode: str


@dataclass(frozen=True)
class ProxySnapshot:
    user_id: int
    max_amount: Decimal
    registered_at: datetime


@dataclass(frozen=True)
class BidRequest:
    bidder_id: int
    amount: Decimal
    placed_at: datetime
    is_max_bid: bool = False


@dataclass(frozen=True)
class BidStep:
    bidder_id: int
    amount: Decimal
    is_proxy: bool


@dataclass(frozen=True)
class TimerPolicy:
    threshold: timedelta
    extension: timedelta


@dataclass(frozen=True)
class Resolution:
    leader_id: int | None
    price: Decimal | None
    bid_count: int
    reserve_met: bool
    ends_at: datetime | None
    original_ends_at: datetime | None
    timer_extensions: int
    timer_extended: bool = False
    ends_now: bool = False
    steps: tuple[BidStep, ...] = ()
    proxy_amounts: dict[int, Decimal] = field(default_factory=dict)
    exhausted_proxies: frozenset[int] = frozenset()
    outbid_user_id: int | None = None

    @property
    def changed(self) -> bool:
        return bool(self.steps)


@dataclass
class _Ceiling:
    user_id: int
    amount: Decimal
    since: datetime
    source: str


def ensure_biddable(snapshot: AuctionSnapshot, placed_at: datetime) -> None:
    if snapshot.status != AUCTION_ACTIVE:
        raise ValidationError(f"Auction is not active (status: {snapshot.status})")
    if snapshot.ends_at is not None and placed_at >= snapshot.ends_at:
        raise ValidationError("Auction has ended")


def validate_bid_amount(snapshot: AuctionSnapshot, amount: Decimal) -> None:
    if amount <= 0:
        raise ValidationError("Bid amount must be positive")
    if snapshot.current_bid is None:
        if amount < snapshot.starting_bid:
            raise ValidationError(f"Bid must be at least {snapshot.starting_bid}")
        return
    threshold = snapshot.current_bid + snapshot.minimum_bid_increment
    if amount <= threshold:
        raise ValidationError(f"Bid must be greater than {threshold}")


def validate_max_amount(snapshot: AuctionSnapshot, max_amount: Decimal) -> None:
    if snapshot.current_bid is None:
        if max_amount < snapshot.starting_bid:
            raise ValidationError(f"Max bid must be at least {snapshot.starting_bid}")
        return
    if max_amount <= snapshot.current_bid:
        raise ValidationError("Max bid must be higher than current bid")


def _offer(ceilings: dict[int, _Ceiling], candidate: _Ceiling) -> None:
    existing = ceilings.get(candidate.user_id)
    if existing is None or candidate.amount > existing.amount:
        ceilings[candidate.user_id] = candidate
    elif candidate.amount == existing.amount and candidate.since < existing.since:
        ceilings[candidate.user_id] = candidate


def _collect_ceilings(
    snapshot: AuctionSnapshot,
    proxies: list[ProxySnapshot],
    request: BidRequest,
) -> dict[int, _Ceiling]:
    ceilings: dict[int, _Ceiling] = {}
    if snapshot.current_bidder_id is not None and snapshot.current_bid is not None:
        _offer(
            ceilings,
            _Ceiling(snapshot.current_bidder_id, snapshot.current_bid, _LEADER_SINCE, SOURCE_LEADER),
        )
    for proxy in proxies:
        if request.is_max_bid and proxy.user_id == request.bidder_id:
            # Replaced by the request itself.
            continue
        _offer(ceilings, _Ceiling(proxy.user_id, proxy.max_amount, proxy.registered_at, SOURCE_PROXY))
    source = SOURCE_PROXY if request.is_max_bid else SOURCE_EXPLICIT
    _offer(ceilings, _Ceiling(request.bidder_id, request.amount, request.placed_at, source))
    return ceilings


def _apply_timer(
    snapshot: AuctionSnapshot,
    placed_at: datetime,
    policy: TimerPolicy,
) -> tuple[datetime | None, datetime | None, int, bool, bool]:
    ends_at = snapshot.ends_at
    original_ends_at = snapshot.original_ends_at
    extensions = snapshot.timer_extensions
    if ends_at is None or ends_at - placed_at > policy.threshold:
        return ends_at, original_ends_at, extensions, False, False

    if snapshot.mode == MODE_SUDDEN_DEATH:
        return placed_at, original_ends_at, extensions, False, True

    if extensions >= snapshot.max_timer_extensions:
        return ends_at, original_ends_at, extensions, False, False

    if original_ends_at is None:
        original_ends_at = ends_at
    return ends_at + policy.extension, original_ends_at, extensions + 1, True, False


def resolve_bid(
    snapshot: AuctionSnapshot,
    proxies: list[ProxySnapshot],
    request: BidRequest,
    policy: TimerPolicy,
    *,
    enforce_increment: bool = True,
) -> Resolution:
    """Resolve one incoming bid (or max-bid registration) against the auction.

    ``enforce_increment`` is off for max-bid registrations, which only have to
    beat the current price.
    """
    ensure_biddable(snapshot, request.placed_at)
    if enforce_increment:
        validate_bid_amount(snapshot, request.amount)
    else:
        validate_max_amount(snapshot, request.amount)

    previous_leader = snapshot.current_bidder_id
    previous_price = snapshot.current_bid
    increment = snapshot.minimum_bid_increment

    ranked = sorted(
        _collect_ceilings(snapshot, proxies, request).values(),
        key=lambda c: (-c.amount, c.since, c.user_id),
    )
    winner = ranked[0]
    runner_up = ranked[1] if len(ranked) > 1 else None

    if winner.user_id == previous_leader:
        floor = previous_price
    elif previous_price is not None:
        floor = previous_price + increment
    else:
        floor = snapshot.starting_bid
    explicit_amount = None if request.is_max_bid else request.amount
    if winner.user_id == request.bidder_id and explicit_amount is not None:
        floor = max(floor, explicit_amount)
    challenge = runner_up.amount + increment if runner_up is not None else floor
    price = min(winner.amount, max(floor, challenge))

    steps: list[BidStep] = []
    if explicit_amount is not None:
        steps.append(BidStep(request.bidder_id, explicit_amount, is_proxy=False))
    last_amount = steps[-1].amount if steps else previous_price
    if (
        runner_up is not None
        and runner_up.source == SOURCE_PROXY
        and runner_up.amount < price
        and (last_amount is None or runner_up.amount > last_amount)
    ):
        # The outbid proxy is pushed to its ceiling before the leader answers.
        steps.append(BidStep(runner_up.user_id, runner_up.amount, is_proxy=True))
    unchanged = winner.user_id == previous_leader and price == previous_price
    if not unchanged and not (steps and steps[-1].bidder_id == winner.user_id and steps[-1].amount == price):
        steps.append(BidStep(winner.user_id, price, is_proxy=winner.source != SOURCE_EXPLICIT))

    if not steps:
        return Resolution(
            leader_id=previous_leader,
            price=previous_price,
            bid_count=snapshot.bid_count,
            reserve_met=snapshot.reserve_met,
            ends_at=snapshot.ends_at,
            original_ends_at=snapshot.original_ends_at,
            timer_extensions=snapshot.timer_extensions,
        )

    active_users = {p.user_id: p.max_amount for p in proxies}
    if request.is_max_bid:
        active_users[request.bidder_id] = request.amount
    proxy_amounts: dict[int, Decimal] = {}
    for step in steps:
        if step.is_proxy and step.bidder_id in active_users:
            proxy_amounts[step.bidder_id] = step.amount
    exhausted = frozenset(
        user_id
        for user_id, max_amount in active_users.items()
        if user_id != winner.user_id and max_amount <= price
    )

    reserve_met = True if snapshot.reserve_price is None else price >= snapshot.reserve_price
    ends_at, original_ends_at, extensions, extended, ends_now = _apply_timer(
        snapshot, request.placed_at, policy
    )
    outbid = previous_leader if previous_leader is not None and previous_leader != winner.user_id else None

    return Resolution(
        leader_id=winner.user_id,
        price=price,
        bid_count=snapshot.bid_count + 1,
        reserve_met=reserve_met,
        ends_at=ends_at,
        original_ends_at=original_ends_at,
        timer_extensions=extensions,
        timer_extended=extended,
        ends_now=ends_now,
        steps=tuple(steps),
        proxy_amounts=proxy_amounts,
        exhausted_proxies=exhausted,
        outbid_user_id=outbid,
    )
