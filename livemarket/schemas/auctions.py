from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_serializer


class _MoneyModel(BaseModel):
    @field_serializer(
        "starting_bid",
        "current_bid",
        "minimum_bid_increment",
        "reserve_price",
        "amount",
        "max_amount",
        "current_proxy_amount",
        "price",
        check_fields=False,
    )
    def serialize_money(self, value: Decimal | None) -> str | None:
        if value is None:
            return None
        return format(value, "f")


class AuctionResponse(_MoneyModel):
    id: int
    seller_id: int
    title: str
    status: str
    mode: str
    starting_bid: Decimal
    current_bid: Decimal | None
    current_bidder_id: int | None
    bid_count: int
    minimum_bid_increment: Decimal
    reserve_met: bool
    ends_at: datetime | None
    original_ends_at: datetime | None
    timer_extensions: int
    max_timer_extensions: int
    winner_id: int | None

    model_config = {"from_attributes": True}


class BidCreateRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    is_max_bid: bool = False

    model_config = {
        "json_schema_extra": {"examples": [{"amount": "61.00", "is_max_bid": False}]}
    }


class MaxBidCreateRequest(BaseModel):
    auction_id: int
    max_amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)


class BidResponse(_MoneyModel):
    id: int
    auction_id: int
    bidder_id: int
    amount: Decimal
    is_winning: bool
    is_proxy: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class MaxBidResponse(_MoneyModel):
    id: int
    auction_id: int
    user_id: int
    max_amount: Decimal
    current_proxy_amount: Decimal | None
    is_active: bool

    model_config = {"from_attributes": True}


class BidPlacedResponse(_MoneyModel):
    bid_id: int | None
    leader_id: int | None
    price: Decimal | None
    timer_extended: bool
    auction_ended: bool
    auction: AuctionResponse
    order_id: int | None = None


class AuctionCloseResponse(BaseModel):
    auction: AuctionResponse
    order_id: int | None
    already_closed: bool
