from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

from livemarket.config import settings


@dataclass(frozen=True)
class ProcessorHold:
    hold_ref: str
    client_secret: str | None = None


class PaymentProcessor(ABC):
    """Gateway operations the escrow state machine relies on.

    Every method either returns on an explicit success response or raises
    PaymentProcessorError. Timeouts are failures.
    """

    name: str = "abstract"

    @abstractmethod
    def authorize(self, amount: Decimal, currency: str, metadata: dict[str, str]) -> ProcessorHold:
        ...

    @abstractmethod
    def capture(self, hold_ref: str) -> Decimal:
        ...

    @abstractmethod
    def cancel_authorization(self, hold_ref: str) -> None:
        ...

    @abstractmethod
    def transfer(
        self,
        destination_account: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        ...

    @abstractmethod
    def refund(
        self,
        hold_ref: str,
        amount: Decimal,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        ...


def get_payment_processor() -> PaymentProcessor:
    from livemarket.services.stripe_processor import StripePaymentProcessor

    if not settings.STRIPE_SECRET_KEY:
        raise ValueError("STRIPE_SECRET_KEY is not set")
    return StripePaymentProcessor(
        api_key=settings.STRIPE_SECRET_KEY,
        timeout_seconds=settings.PAYMENT_PROCESSOR_TIMEOUT_SECONDS,
    )
