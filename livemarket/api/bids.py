from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from livemarket.api.auctions import _placed
from livemarket.dependencies import get_current_user
from livemarket.errors import DomainError, http_error
from livemarket.models import User, get_db
from livemarket.schemas import BidPlacedResponse, BidResponse, MaxBidCreateRequest, MaxBidResponse
from livemarket.services import bidding, orders

router = APIRouter()


@router.get("/me", response_model=list[BidResponse], summary="My bids")
def my_bids(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return bidding.get_user_bids(db, current_user.id)


@router.get("/max", response_model=list[MaxBidResponse], summary="My active max bids")
def my_max_bids(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return bidding.get_user_max_bids(db, current_user.id)


@router.post("/max", response_model=BidPlacedResponse, summary="Register or raise a max bid")
def register_max_bid(
    body: MaxBidCreateRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    try:
        outcome = bidding.register_max_bid(db, current_user.id, body.auction_id, body.max_amount)
        order = orders.create_order_for_win(db, outcome.won) if outcome.won else None
    except DomainError as e:
        raise http_error(e) from e
    return _placed(outcome, order.id if order else None)


@router.delete("/max/{max_bid_id}", response_model=MaxBidResponse, summary="Cancel a max bid")
def cancel_max_bid(
    max_bid_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    try:
        return bidding.cancel_max_bid(db, current_user.id, max_bid_id)
    except DomainError as e:
        raise http_error(e) from e
