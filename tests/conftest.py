import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Generator

# Override settings for tests before importing app modules
TEST_DATABASE_URL = "sqlite:///:memory:"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["JWT_SECRET"] = "test-secret-key-for-testing-only"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_mock"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_mock"
os.environ["PLATFORM_FEE_RATE"] = "0.08"
os.environ["JOBS_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from livemarket.config import settings
from livemarket.dependencies import get_processor
from livemarket.errors import PaymentProcessorError
from livemarket.main import app
from livemarket.models.auction import AUCTION_ACTIVE, Auction
from livemarket.models.database import Base, get_db
from livemarket.models.order import Order
from livemarket.models.user import SellerAccount, User
from livemarket.services.payment_processor import PaymentProcessor, ProcessorHold

# Create test database engine
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakePaymentProcessor(PaymentProcessor):
    """Records every call. Set ``fail[operation]`` to an exception to make it raise."""

    name = "fake"

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.fail: dict[str, Exception] = {}
        self.captured_amounts: dict[str, Decimal] = {}
        self._counter = 0

    def _next_ref(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_test_{self._counter}"

    def _record(self, operation: str, **kwargs) -> None:
        self.calls.append((operation, kwargs))
        if operation in self.fail:
            raise self.fail[operation]

    def operations(self) -> list[str]:
        return [operation for operation, _ in self.calls]

    def authorize(self, amount, currency, metadata):
        self._record("authorize", amount=amount, currency=currency, metadata=metadata)
        hold_ref = self._next_ref("pi")
        self.captured_amounts[hold_ref] = amount
        return ProcessorHold(hold_ref=hold_ref, client_secret=f"{hold_ref}_secret")

    def capture(self, hold_ref):
        self._record("capture", hold_ref=hold_ref)
        return self.captured_amounts.get(hold_ref, Decimal("0.00"))

    def cancel_authorization(self, hold_ref):
        self._record("cancel_authorization", hold_ref=hold_ref)

    def transfer(self, destination_account, amount, currency, metadata, idempotency_key):
        self._record(
            "transfer",
            destination_account=destination_account,
            amount=amount,
            currency=currency,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return self._next_ref("tr")

    def refund(self, hold_ref, amount, metadata, idempotency_key):
        self._record(
            "refund",
            hold_ref=hold_ref,
            amount=amount,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return self._next_ref("re")


def processor_timeout(operation: str) -> PaymentProcessorError:
    return PaymentProcessorError(
        "Request timed out",
        operation=operation,
        code="APIConnectionError",
        retryable=True,
    )


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=test_engine)
    db_session = TestSessionLocal()
    try:
        yield db_session
    finally:
        db_session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def processor() -> FakePaymentProcessor:
    return FakePaymentProcessor()


@pytest.fixture(scope="function")
def client(db: Session, processor: FakePaymentProcessor) -> Generator[TestClient, None, None]:
    """Create a test client with database and processor overrides."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_processor] = lambda: processor
    yield TestClient(app)
    app.dependency_overrides.clear()


def _make_user(db: Session, email: str, display_name: str) -> User:
    user = User(email=email, display_name=display_name)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def seller(db: Session) -> User:
    return _make_user(db, "seller@example.com", "Seller")


@pytest.fixture
def buyer(db: Session) -> User:
    return _make_user(db, "buyer@example.com", "Buyer")


@pytest.fixture
def bidder_a(db: Session) -> User:
    return _make_user(db, "alice@example.com", "Alice")


@pytest.fixture
def bidder_b(db: Session) -> User:
    return _make_user(db, "bob@example.com", "Bob")


@pytest.fixture
def bidder_c(db: Session) -> User:
    return _make_user(db, "carol@example.com", "Carol")


@pytest.fixture
def seller_account(db: Session, seller: User) -> SellerAccount:
    account = SellerAccount(
        user_id=seller.id,
        processor_account_id="acct_test_seller",
        payouts_enabled=True,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_auction(db: Session, seller: User, now: datetime):
    """Factory for active auctions ending an hour after ``now`` unless overridden."""

    def _make(**overrides) -> Auction:
        values = {
            "seller_id": seller.id,
            "title": "Vintage camera",
            "starting_bid": Decimal("50.00"),
            "minimum_bid_increment": Decimal("1.00"),
            "status": AUCTION_ACTIVE,
            "ends_at": now + timedelta(hours=1),
            "started_at": now - timedelta(hours=1),
        }
        values.update(overrides)
        auction = Auction(**values)
        db.add(auction)
        db.commit()
        db.refresh(auction)
        return auction

    return _make


@pytest.fixture
def auction(make_auction) -> Auction:
    return make_auction()


@pytest.fixture
def pending_order(db: Session, buyer: User, seller: User, seller_account: SellerAccount) -> Order:
    order = Order(
        buyer_id=buyer.id,
        seller_id=seller.id,
        total=Decimal("103.47"),
        currency="usd",
        status="pending",
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    return order


def make_token(user_id: int, **extra) -> str:
    payload = {
        "sub": str(user_id),
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
        **extra,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_headers_for(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user.id)}"}


@pytest.fixture
def headers_for():
    return auth_headers_for


@pytest.fixture
def timeout_error():
    return processor_timeout


@pytest.fixture
def published():
    """Every domain event published during the test, in order."""
    from livemarket.services.events import (
        AuctionEndedWithoutSale,
        AuctionWon,
        BidAccepted,
        BidderOutbid,
        EscrowTransitioned,
        event_bus,
    )

    events = []
    event_types = (BidAccepted, BidderOutbid, AuctionWon, AuctionEndedWithoutSale, EscrowTransitioned)
    for event_type in event_types:
        event_bus.subscribe(event_type, events.append)
    yield events
    for event_type in event_types:
        event_bus.unsubscribe(event_type, events.append)
