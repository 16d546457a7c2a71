from livemarket.schemas.auctions import (
    AuctionCloseResponse,
    AuctionResponse,
    BidCreateRequest,
    BidPlacedResponse,
    BidResponse,
    MaxBidCreateRequest,
    MaxBidResponse,
)
from livemarket.schemas.escrow import (
    DisputeResolveRequest,
    EscrowCreateRequest,
    EscrowCreateResponse,
    EscrowRefundRequest,
    EscrowResponse,
)

__all__ = [
    "AuctionCloseResponse",
    "AuctionResponse",
    "BidCreateRequest",
    "BidPlacedResponse",
    "BidResponse",
    "MaxBidCreateRequest",
    "MaxBidResponse",
    "DisputeResolveRequest",
    "EscrowCreateRequest",
    "EscrowCreateResponse",
    "EscrowRefundRequest",
    "EscrowResponse",
]
