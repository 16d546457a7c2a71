from livemarket.models.database import Base, get_db
from livemarket.models.user import SellerAccount, User
from livemarket.models.auction import Auction, Bid, ProxyBid
from livemarket.models.order import Order
from livemarket.models.escrow import EscrowTransaction

__all__ = ["Base", "get_db", "User", "SellerAccount", "Auction", "Bid", "ProxyBid", "Order", "EscrowTransaction"]
