"""Post-commit domain events.

Financial transitions commit first; subscribers (notifications, analytics) run
afterwards and a failing subscriber is logged, never propagated.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BidAccepted:
    auction_id: int
    bidder_id: int
    leader_id: int
    price: Decimal
    bid_count: int


@dataclass(frozen=True)
class BidderOutbid:
    auction_id: int
    user_id: int
    price: Decimal


@dataclass(frozen=True)
class AuctionWon:
    auction_id: int
    winner_id: int
    seller_id: int
    final_price: Decimal


@dataclass(frozen=True)
class AuctionEndedWithoutSale:
    auction_id: int
    seller_id: int
    reserve_met: bool


@dataclass(frozen=True)
class EscrowTransitioned:
    escrow_id: int
    order_id: int
    status: str


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[type, list[Callable]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Callable) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: type, handler: Callable) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: object) -> None:
        for handler in list(self._subscribers.get(type(event), [])):
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, type(event).__name__)


event_bus = EventBus()
