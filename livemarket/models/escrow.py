from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from livemarket.models.database import Base

ESCROW_PENDING = "pending"
ESCROW_HELD = "held"
ESCROW_RELEASING = "releasing"
ESCROW_RELEASED = "released"
ESCROW_REFUNDING = "refunding"
ESCROW_REFUNDED = "refunded"
ESCROW_DISPUTED = "disputed"
ESCROW_CANCELLED = "cancelled"

# Anything past capture; a repeated capture webhook for these is a no-op.
CAPTURED_STATUSES = frozenset(
    {
        ESCROW_HELD,
        ESCROW_RELEASING,
        ESCROW_RELEASED,
        ESCROW_REFUNDING,
        ESCROW_REFUNDED,
        ESCROW_DISPUTED,
    }
)


class EscrowTransaction(Base):
    __tablename__ = "escrow_transactions"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False)
    seller_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String(20), nullable=False, default=ESCROW_PENDING, index=True)
    processor_hold_ref = Column(String(255), unique=True, nullable=False, index=True)
    processor_transfer_ref = Column(String(255), nullable=True)
    processor_refund_ref = Column(String(255), nullable=True)
    held_at = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    release_scheduled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    release_reason = Column(String(100), nullable=True)  # delivery_confirmed | auto_release | dispute_resolved
    refund_reason = Column(Text, nullable=True)
    dispute_ref = Column(String(255), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}
