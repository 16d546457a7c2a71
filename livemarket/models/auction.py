from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.sql import func

from livemarket.config import settings
from livemarket.models.database import Base

AUCTION_PENDING = "pending"
AUCTION_ACTIVE = "active"
AUCTION_ENDED = "ended"
AUCTION_CANCELLED = "cancelled"

MODE_NORMAL = "normal"
MODE_SUDDEN_DEATH = "sudden_death"


class Auction(Base):
    __tablename__ = "auctions"

    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    starting_bid = Column(Numeric(12, 2), nullable=False)
    current_bid = Column(Numeric(12, 2), nullable=True)
    current_bidder_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    bid_count = Column(Integer, default=0, nullable=False)
    minimum_bid_increment = Column(Numeric(12, 2), default=1, nullable=False)
    reserve_price = Column(Numeric(12, 2), nullable=True)
    reserve_met = Column(Boolean, default=False, nullable=False)
    status = Column(String(20), default=AUCTION_PENDING, nullable=False, index=True)  # pending | active | ended | cancelled
    mode = Column(String(20), default=MODE_NORMAL, nullable=False)  # normal | sudden_death
    ends_at = Column(DateTime(timezone=True), nullable=True, index=True)
    original_ends_at = Column(DateTime(timezone=True), nullable=True)
    timer_extensions = Column(Integer, default=0, nullable=False)
    max_timer_extensions = Column(Integer, default=lambda: settings.DEFAULT_MAX_TIMER_EXTENSIONS, nullable=False)
    winner_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}


class Bid(Base):
    __tablename__ = "bids"

    id = Column(Integer, primary_key=True, index=True)
    auction_id = Column(Integer, ForeignKey("auctions.id"), nullable=False, index=True)
    bidder_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    is_winning = Column(Boolean, default=False, nullable=False)
    is_proxy = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)


class ProxyBid(Base):
    __tablename__ = "proxy_bids"
    __table_args__ = (UniqueConstraint("auction_id", "user_id", name="uq_proxy_bids_auction_user"),)

    id = Column(Integer, primary_key=True, index=True)
    auction_id = Column(Integer, ForeignKey("auctions.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    max_amount = Column(Numeric(12, 2), nullable=False)
    current_proxy_amount = Column(Numeric(12, 2), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    registered_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
