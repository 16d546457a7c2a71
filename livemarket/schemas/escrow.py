from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_serializer


class EscrowCreateRequest(BaseModel):
    order_id: int


class EscrowCreateResponse(BaseModel):
    escrow_id: int
    payment_intent_id: str
    client_secret: str | None
    amount: Decimal
    platform_fee: Decimal
    seller_amount: Decimal

    @field_serializer("amount", "platform_fee", "seller_amount")
    def serialize_money(self, value: Decimal) -> str:
        return format(value, "f")


class EscrowRefundRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class DisputeResolveRequest(BaseModel):
    outcome: Literal["release", "refund"]
    reason: str | None = None


class EscrowResponse(BaseModel):
    id: int
    order_id: int
    buyer_id: int
    seller_id: int
    amount: Decimal
    platform_fee: Decimal
    seller_amount: Decimal
    currency: str
    status: str
    held_at: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None
    release_scheduled_at: datetime
    release_reason: str | None
    dispute_ref: str | None

    model_config = {"from_attributes": True}

    @field_serializer("amount", "platform_fee", "seller_amount")
    def serialize_money(self, value: Decimal) -> str:
        return format(value, "f")
