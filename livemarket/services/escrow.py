"""Escrow state machine.

    pending --capture--> held --release--> releasing --> released
                         held --refund---> refunding --> refunded
                         held --dispute--> disputed --resolve--> releasing | refunding
    pending --cancel---> cancelled

Transitional states (releasing, refunding) are committed before the processor
is called, so a concurrent attempt sees them and is rejected. A processor
failure, or a failure recording its result, puts the row back to held and
re-raises.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from livemarket.config import settings
from livemarket.errors import ForbiddenError, NotFoundError, PaymentProcessorError, ValidationError
from livemarket.models import EscrowTransaction, Order, SellerAccount
from livemarket.models.escrow import (
    CAPTURED_STATUSES,
    ESCROW_CANCELLED,
    ESCROW_DISPUTED,
    ESCROW_HELD,
    ESCROW_PENDING,
    ESCROW_REFUNDED,
    ESCROW_REFUNDING,
    ESCROW_RELEASED,
    ESCROW_RELEASING,
)
from livemarket.models.order import ORDER_DELIVERED, ORDER_PAID, ORDER_PENDING, ORDER_REFUNDED
from livemarket.services.clock import utcnow
from livemarket.services.events import EscrowTransitioned, event_bus
from livemarket.services.ledger import lock_escrow, lock_escrow_by_hold_ref, row_transaction
from livemarket.services.money import split_platform_fee, to_money
from livemarket.services.payment_processor import PaymentProcessor

logger = logging.getLogger(__name__)

RELEASE_DELIVERY_CONFIRMED = "delivery_confirmed"
RELEASE_AUTO = "auto_release"
RELEASE_DISPUTE_RESOLVED = "dispute_resolved"

DISPUTE_OUTCOME_RELEASE = "release"
DISPUTE_OUTCOME_REFUND = "refund"


@dataclass(frozen=True)
class EscrowAuthorization:
    escrow_id: int
    hold_ref: str
    client_secret: str | None
    amount: Decimal
    platform_fee: Decimal
    seller_amount: Decimal


def _publish(escrow: EscrowTransaction) -> None:
    event_bus.publish(EscrowTransitioned(escrow_id=escrow.id, order_id=escrow.order_id, status=escrow.status))


def _payable_seller(db: Session, seller_id: int) -> SellerAccount:
    account = db.query(SellerAccount).filter(SellerAccount.user_id == seller_id).first()
    if not account or not account.processor_account_id:
        raise ValidationError("Seller has not connected a payout account")
    if not account.payouts_enabled:
        raise ValidationError("Seller payout account is not fully set up for payouts")
    return account


def _log_processor_failure(escrow_id: int, operation: str, exc: Exception) -> None:
    code = exc.code if isinstance(exc, PaymentProcessorError) else type(exc).__name__
    retryable = exc.retryable if isinstance(exc, PaymentProcessorError) else False
    logger.error(
        "Processor %s failed for escrow %s: code=%s retryable=%s error=%s",
        operation,
        escrow_id,
        code,
        retryable,
        exc,
    )


def _revert_to_held(db: Session, escrow_id: int, from_status: str) -> None:
    with row_transaction(db, f"escrow {escrow_id}"):
        escrow = lock_escrow(db, escrow_id)
        if escrow.status == from_status:
            escrow.status = ESCROW_HELD
    logger.warning("Escrow %s reverted from %s to held", escrow_id, from_status)


def _payable_order(db: Session, order_id: int, buyer_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id).with_for_update().first()
    if not order:
        raise NotFoundError("Order", order_id)
    if order.buyer_id != buyer_id:
        raise ForbiddenError("Only the buyer can pay for this order")
    if order.status != ORDER_PENDING:
        raise ValidationError(f"Order is already {order.status}")
    _payable_seller(db, order.seller_id)

    existing = (
        db.query(EscrowTransaction)
        .filter(EscrowTransaction.order_id == order_id, EscrowTransaction.status != ESCROW_CANCELLED)
        .first()
    )
    if existing:
        raise ValidationError("Escrow already exists for this order")
    return order


def create_escrow(
    db: Session,
    processor: PaymentProcessor,
    order_id: int,
    buyer_id: int,
    now: datetime | None = None,
) -> EscrowAuthorization:
    """Authorize (not capture) the order total and open a pending escrow."""
    now = now or utcnow()
    try:
        order = _payable_order(db, order_id, buyer_id)
    except Exception:
        db.rollback()
        raise

    gross = to_money(order.total)
    platform_fee, seller_amount = split_platform_fee(gross, settings.PLATFORM_FEE_RATE)
    currency = order.currency or settings.PAYMENT_CURRENCY

    try:
        hold = processor.authorize(
            gross,
            currency,
            {"order_id": str(order.id), "buyer_id": str(buyer_id), "seller_id": str(order.seller_id)},
        )
    except PaymentProcessorError as exc:
        db.rollback()
        logger.error("Processor authorize failed for order %s: code=%s error=%s", order_id, exc.code, exc)
        raise

    escrow = EscrowTransaction(
        order_id=order.id,
        buyer_id=buyer_id,
        seller_id=order.seller_id,
        amount=gross,
        platform_fee=platform_fee,
        seller_amount=seller_amount,
        currency=currency,
        status=ESCROW_PENDING,
        processor_hold_ref=hold.hold_ref,
        release_scheduled_at=now + timedelta(days=settings.ESCROW_AUTO_RELEASE_DAYS),
    )
    try:
        with row_transaction(db, f"escrow for order {order_id}"):
            db.add(escrow)
    except Exception:
        logger.exception("Could not persist escrow for order %s; voiding hold %s", order_id, hold.hold_ref)
        try:
            processor.cancel_authorization(hold.hold_ref)
        except PaymentProcessorError as cancel_exc:
            logger.error("Could not void hold %s: code=%s error=%s", hold.hold_ref, cancel_exc.code, cancel_exc)
        raise

    logger.info(
        "Escrow %s created for order %s: gross=%s fee=%s seller=%s hold=%s",
        escrow.id,
        order_id,
        gross,
        platform_fee,
        seller_amount,
        hold.hold_ref,
    )
    _publish(escrow)
    return EscrowAuthorization(
        escrow_id=escrow.id,
        hold_ref=hold.hold_ref,
        client_secret=hold.client_secret,
        amount=gross,
        platform_fee=platform_fee,
        seller_amount=seller_amount,
    )


def capture_to_escrow(
    db: Session,
    processor: PaymentProcessor,
    hold_ref: str,
    now: datetime | None = None,
) -> EscrowTransaction:
    """Capture an authorized hold. Safe to call repeatedly for the same hold."""
    now = now or utcnow()
    with row_transaction(db, f"escrow hold {hold_ref}"):
        escrow = lock_escrow_by_hold_ref(db, hold_ref)
        if not escrow:
            raise NotFoundError("Escrow", hold_ref)
        if escrow.status in CAPTURED_STATUSES:
            logger.info("Escrow %s already %s, skipping capture", escrow.id, escrow.status)
            return escrow
        if escrow.status != ESCROW_PENDING:
            raise ValidationError(f"Cannot capture escrow in status: {escrow.status}")

        try:
            captured = processor.capture(hold_ref)
        except PaymentProcessorError as exc:
            _log_processor_failure(escrow.id, "capture", exc)
            raise
        if to_money(captured) != to_money(escrow.amount):
            logger.warning(
                "Captured amount mismatch for escrow %s: expected=%s, captured=%s",
                escrow.id,
                escrow.amount,
                captured,
            )

        escrow.status = ESCROW_HELD
        escrow.held_at = now
        order = db.query(Order).filter(Order.id == escrow.order_id).with_for_update().first()
        if order:
            order.status = ORDER_PAID
            order.paid_at = now
            order.processor_payment_ref = hold_ref

    logger.info("Escrow %s captured and held for order %s", escrow.id, escrow.order_id)
    _publish(escrow)
    return escrow


def _release(
    db: Session,
    processor: PaymentProcessor,
    escrow_id: int,
    reason: str,
    allowed_from: frozenset[str],
) -> EscrowTransaction:
    with row_transaction(db, f"escrow {escrow_id}"):
        escrow = lock_escrow(db, escrow_id)
        if escrow.status not in allowed_from:
            raise ValidationError(f"Cannot release escrow in status: {escrow.status}")
        seller = _payable_seller(db, escrow.seller_id)
        escrow.status = ESCROW_RELEASING
    destination = seller.processor_account_id

    try:
        transfer_ref = processor.transfer(
            destination,
            to_money(escrow.seller_amount),
            escrow.currency,
            {"escrow_id": str(escrow.id), "order_id": str(escrow.order_id), "release_reason": reason},
            idempotency_key=f"escrow-{escrow.id}-release",
        )
    except Exception as exc:
        _log_processor_failure(escrow_id, "transfer", exc)
        _revert_to_held(db, escrow_id, ESCROW_RELEASING)
        raise

    now = utcnow()
    try:
        with row_transaction(db, f"escrow {escrow_id}"):
            escrow = lock_escrow(db, escrow_id)
            escrow.status = ESCROW_RELEASED
            escrow.processor_transfer_ref = transfer_ref
            escrow.released_at = now
            escrow.release_reason = reason
            order = db.query(Order).filter(Order.id == escrow.order_id).with_for_update().first()
            if order:
                order.status = ORDER_DELIVERED
                order.delivered_at = now
            seller = (
                db.query(SellerAccount)
                .filter(SellerAccount.user_id == escrow.seller_id)
                .with_for_update()
                .first()
            )
            seller.total_revenue = to_money(seller.total_revenue or 0) + to_money(escrow.seller_amount)
            seller.sales_count = (seller.sales_count or 0) + 1
    except Exception:
        # The transfer idempotency key makes the next release attempt reuse this transfer.
        logger.exception("Escrow %s transferred (%s) but could not be recorded", escrow_id, transfer_ref)
        _revert_to_held(db, escrow_id, ESCROW_RELEASING)
        raise

    logger.info("Escrow %s released to seller %s (%s). Transfer: %s", escrow_id, escrow.seller_id, reason, transfer_ref)
    _publish(escrow)
    return escrow


def _refund(
    db: Session,
    processor: PaymentProcessor,
    escrow_id: int,
    reason: str,
    allowed_from: frozenset[str],
) -> EscrowTransaction:
    with row_transaction(db, f"escrow {escrow_id}"):
        escrow = lock_escrow(db, escrow_id)
        if escrow.status not in allowed_from:
            raise ValidationError(f"Cannot refund escrow in status: {escrow.status}")
        escrow.status = ESCROW_REFUNDING

    try:
        refund_ref = processor.refund(
            escrow.processor_hold_ref,
            to_money(escrow.amount),
            {"escrow_id": str(escrow.id), "order_id": str(escrow.order_id), "refund_reason": reason},
            idempotency_key=f"escrow-{escrow.id}-refund",
        )
    except Exception as exc:
        _log_processor_failure(escrow_id, "refund", exc)
        _revert_to_held(db, escrow_id, ESCROW_REFUNDING)
        raise

    now = utcnow()
    try:
        with row_transaction(db, f"escrow {escrow_id}"):
            escrow = lock_escrow(db, escrow_id)
            escrow.status = ESCROW_REFUNDED
            escrow.processor_refund_ref = refund_ref
            escrow.refunded_at = now
            escrow.refund_reason = reason
            order = db.query(Order).filter(Order.id == escrow.order_id).with_for_update().first()
            if order:
                order.status = ORDER_REFUNDED
                order.refunded_at = now
    except Exception:
        logger.exception("Escrow %s refunded (%s) but could not be recorded", escrow_id, refund_ref)
        _revert_to_held(db, escrow_id, ESCROW_REFUNDING)
        raise

    logger.info("Escrow %s refunded to buyer %s. Refund: %s", escrow_id, escrow.buyer_id, refund_ref)
    _publish(escrow)
    return escrow


def release_to_seller(
    db: Session,
    processor: PaymentProcessor,
    escrow_id: int,
    reason: str = RELEASE_DELIVERY_CONFIRMED,
) -> EscrowTransaction:
    return _release(db, processor, escrow_id, reason, frozenset({ESCROW_HELD}))


def refund_to_buyer(
    db: Session,
    processor: PaymentProcessor,
    escrow_id: int,
    reason: str,
) -> EscrowTransaction:
    return _refund(db, processor, escrow_id, reason, frozenset({ESCROW_HELD, ESCROW_DISPUTED}))


def resolve_dispute(
    db: Session,
    processor: PaymentProcessor,
    escrow_id: int,
    outcome: str,
    reason: str | None = None,
) -> EscrowTransaction:
    escrow = get_escrow(db, escrow_id)
    if escrow.status != ESCROW_DISPUTED:
        raise ValidationError(f"Escrow is not disputed (status: {escrow.status})")
    disputed_only = frozenset({ESCROW_DISPUTED})
    if outcome == DISPUTE_OUTCOME_RELEASE:
        return _release(db, processor, escrow_id, RELEASE_DISPUTE_RESOLVED, disputed_only)
    if outcome == DISPUTE_OUTCOME_REFUND:
        return _refund(db, processor, escrow_id, reason or "dispute_resolved", disputed_only)
    raise ValidationError(f"Unknown dispute outcome: {outcome}")


def cancel_escrow(db: Session, processor: PaymentProcessor, escrow_id: int) -> EscrowTransaction:
    with row_transaction(db, f"escrow {escrow_id}"):
        escrow = lock_escrow(db, escrow_id)
        if escrow.status != ESCROW_PENDING:
            raise ValidationError(f"Cannot cancel escrow in status: {escrow.status}")
        try:
            processor.cancel_authorization(escrow.processor_hold_ref)
        except PaymentProcessorError as exc:
            _log_processor_failure(escrow_id, "cancel_authorization", exc)
            raise
        escrow.status = ESCROW_CANCELLED

    logger.info("Escrow %s cancelled; hold %s voided", escrow_id, escrow.processor_hold_ref)
    _publish(escrow)
    return escrow


def handle_dispute_created(db: Session, hold_ref: str, dispute_ref: str) -> EscrowTransaction | None:
    with row_transaction(db, f"escrow hold {hold_ref}"):
        escrow = lock_escrow_by_hold_ref(db, hold_ref)
        if not escrow:
            logger.warning("No escrow found for disputed payment %s", hold_ref)
            return None
        if escrow.status != ESCROW_HELD:
            logger.warning(
                "Ignoring dispute %s for escrow %s in status %s",
                dispute_ref,
                escrow.id,
                escrow.status,
            )
            return None
        escrow.status = ESCROW_DISPUTED
        escrow.dispute_ref = dispute_ref

    logger.info("Escrow %s marked as disputed. Dispute: %s", escrow.id, dispute_ref)
    _publish(escrow)
    return escrow


def process_auto_release(db: Session, processor: PaymentProcessor, now: datetime | None = None) -> int:
    """Release every held escrow whose window has elapsed. Failures are logged and skipped."""
    now = now or utcnow()
    due_ids = [
        escrow_id
        for (escrow_id,) in db.query(EscrowTransaction.id)
        .filter(
            EscrowTransaction.status == ESCROW_HELD,
            EscrowTransaction.release_scheduled_at <= now,
        )
        .order_by(EscrowTransaction.release_scheduled_at.asc())
        .all()
    ]
    released = 0
    for escrow_id in due_ids:
        try:
            release_to_seller(db, processor, escrow_id, RELEASE_AUTO)
            released += 1
        except Exception:
            logger.exception("Auto-release failed for escrow %s", escrow_id)

    logger.info("Auto-released %s of %s due escrows", released, len(due_ids))
    return released


def get_escrow(db: Session, escrow_id: int) -> EscrowTransaction:
    escrow = db.get(EscrowTransaction, escrow_id)
    if not escrow:
        raise NotFoundError("Escrow", escrow_id)
    return escrow


def get_escrow_by_order(db: Session, order_id: int) -> EscrowTransaction:
    escrow = (
        db.query(EscrowTransaction)
        .filter(EscrowTransaction.order_id == order_id)
        .order_by(EscrowTransaction.id.desc())
        .first()
    )
    if not escrow:
        raise NotFoundError("Escrow for order", order_id)
    return escrow


