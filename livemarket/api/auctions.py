import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from livemarket.dependencies import get_current_user
from livemarket.errors import DomainError, ForbiddenError, http_error
from livemarket.models import User, get_db
from livemarket.schemas import (
    AuctionCloseResponse,
    AuctionResponse,
    BidCreateRequest,
    BidPlacedResponse,
    BidResponse,
)
from livemarket.services import bidding, orders

router = APIRouter()
logger = logging.getLogger(__name__)


def _placed(outcome: bidding.BidOutcome, order_id: int | None) -> BidPlacedResponse:
    return BidPlacedResponse(
        bid_id=outcome.bid_id,
        leader_id=outcome.leader_id,
        price=outcome.price,
        timer_extended=outcome.timer_extended,
        auction_ended=outcome.auction_ended,
        auction=AuctionResponse.model_validate(outcome.auction),
        order_id=order_id,
    )


@router.get("/{auction_id}", response_model=AuctionResponse, summary="Get auction state")
def get_auction(auction_id: int, db: Annotated[Session, Depends(get_db)]):
    try:
        return bidding.get_auction(db, auction_id)
    except DomainError as e:
        raise http_error(e) from e


@router.get("/{auction_id}/bids", response_model=list[BidResponse], summary="Bid history, newest first")
def list_auction_bids(auction_id: int, db: Annotated[Session, Depends(get_db)]):
    try:
        return bidding.get_auction_bids(db, auction_id)
    except DomainError as e:
        raise http_error(e) from e


@router.post("/{auction_id}/bids", response_model=BidPlacedResponse, summary="Place a bid")
def place_bid(
    auction_id: int,
    body: BidCreateRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    """
    Place an explicit bid, or a max (proxy) bid when `is_max_bid` is true.
    A 409 means another bid won the race; re-read the auction and retry.
    A bid that ends a sudden-death auction opens the winner's order.
    """
    try:
        outcome = bidding.place_bid(db, current_user.id, auction_id, body.amount, is_max_bid=body.is_max_bid)
        order = orders.create_order_for_win(db, outcome.won) if outcome.won else None
    except DomainError as e:
        raise http_error(e) from e
    return _placed(outcome, order.id if order else None)


@router.post("/{auction_id}/start", response_model=AuctionResponse, summary="Start a pending auction")
def start_auction(
    auction_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    try:
        auction = bidding.get_auction(db, auction_id)
        if auction.seller_id != current_user.id:
            raise ForbiddenError("You do not own this auction")
        return bidding.start_auction(db, auction_id)
    except DomainError as e:
        raise http_error(e) from e


@router.post("/{auction_id}/close", response_model=AuctionCloseResponse, summary="End an auction")
def close_auction(
    auction_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    """Idempotent. A sale opens (or returns) the winner's pending order."""
    try:
        auction = bidding.get_auction(db, auction_id)
        if auction.seller_id != current_user.id:
            raise ForbiddenError("You do not own this auction")
        outcome = bidding.close_auction(db, auction_id)
        order = orders.create_order_for_win(db, outcome.won) if outcome.won else None
    except DomainError as e:
        raise http_error(e) from e
    return AuctionCloseResponse(
        auction=AuctionResponse.model_validate(outcome.auction),
        order_id=order.id if order else None,
        already_closed=outcome.already_closed,
    )


@router.post("/{auction_id}/cancel", response_model=AuctionResponse, summary="Cancel an auction without bids")
def cancel_auction(
    auction_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    try:
        return bidding.cancel_auction(db, current_user.id, auction_id)
    except DomainError as e:
        raise http_error(e) from e
