from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from livemarket.dependencies import get_current_user, get_processor
from livemarket.errors import DomainError, ForbiddenError, http_error
from livemarket.models import EscrowTransaction, User, get_db
from livemarket.schemas import (
    DisputeResolveRequest,
    EscrowCreateRequest,
    EscrowCreateResponse,
    EscrowRefundRequest,
    EscrowResponse,
)
from livemarket.services import escrow as escrow_service
from livemarket.services.payment_processor import PaymentProcessor

router = APIRouter()


def _visible_escrow(db: Session, escrow_id: int, user: User) -> EscrowTransaction:
    escrow = escrow_service.get_escrow(db, escrow_id)
    if user.id not in {escrow.buyer_id, escrow.seller_id}:
        raise ForbiddenError("Not a party to this escrow")
    return escrow


@router.post("", response_model=EscrowCreateResponse, summary="Authorize payment into escrow")
def create_escrow(
    body: EscrowCreateRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    processor: Annotated[PaymentProcessor, Depends(get_processor)],
):
    """
    Place a manual-capture hold for the order total. The client confirms the
    payment with `client_secret`; the capture happens on the processor webhook.
    """
    try:
        auth = escrow_service.create_escrow(db, processor, body.order_id, current_user.id)
    except DomainError as e:
        raise http_error(e) from e
    return EscrowCreateResponse(
        escrow_id=auth.escrow_id,
        payment_intent_id=auth.hold_ref,
        client_secret=auth.client_secret,
        amount=auth.amount,
        platform_fee=auth.platform_fee,
        seller_amount=auth.seller_amount,
    )


@router.get("/{escrow_id}", response_model=EscrowResponse, summary="Get escrow")
def get_escrow(
    escrow_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    try:
        return _visible_escrow(db, escrow_id, current_user)
    except DomainError as e:
        raise http_error(e) from e


@router.get("/order/{order_id}", response_model=EscrowResponse, summary="Get escrow for an order")
def get_escrow_by_order(
    order_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    try:
        escrow = escrow_service.get_escrow_by_order(db, order_id)
        return _visible_escrow(db, escrow.id, current_user)
    except DomainError as e:
        raise http_error(e) from e


@router.post("/{escrow_id}/confirm-delivery", response_model=EscrowResponse, summary="Buyer confirms delivery")
def confirm_delivery(
    escrow_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    processor: Annotated[PaymentProcessor, Depends(get_processor)],
):
    try:
        escrow = _visible_escrow(db, escrow_id, current_user)
        if escrow.buyer_id != current_user.id:
            raise ForbiddenError("Only the buyer can confirm delivery")
        return escrow_service.release_to_seller(db, processor, escrow_id)
    except DomainError as e:
        raise http_error(e) from e


@router.post("/{escrow_id}/refund", response_model=EscrowResponse, summary="Seller refunds the buyer")
def refund(
    escrow_id: int,
    body: EscrowRefundRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    processor: Annotated[PaymentProcessor, Depends(get_processor)],
):
    try:
        escrow = _visible_escrow(db, escrow_id, current_user)
        if escrow.seller_id != current_user.id:
            raise ForbiddenError("Only the seller can issue a refund")
        return escrow_service.refund_to_buyer(db, processor, escrow_id, body.reason)
    except DomainError as e:
        raise http_error(e) from e


@router.post("/{escrow_id}/cancel", response_model=EscrowResponse, summary="Buyer abandons checkout")
def cancel(
    escrow_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    processor: Annotated[PaymentProcessor, Depends(get_processor)],
):
    try:
        escrow = _visible_escrow(db, escrow_id, current_user)
        if escrow.buyer_id != current_user.id:
            raise ForbiddenError("Only the buyer can cancel checkout")
        return escrow_service.cancel_escrow(db, processor, escrow_id)
    except DomainError as e:
        raise http_error(e) from e


@router.post("/{escrow_id}/resolve-dispute", response_model=EscrowResponse, summary="Settle a disputed escrow")
def resolve_dispute(
    escrow_id: int,
    body: DisputeResolveRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    processor: Annotated[PaymentProcessor, Depends(get_processor)],
):
    """Settlement is driven by the seller until an operator surface exists."""
    try:
        escrow = _visible_escrow(db, escrow_id, current_user)
        if escrow.seller_id != current_user.id:
            raise ForbiddenError("Only the seller can settle a dispute")
        return escrow_service.resolve_dispute(db, processor, escrow_id, body.outcome, body.reason)
    except DomainError as e:
        raise http_error(e) from e
