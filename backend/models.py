import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import (
    Column, Integer, String, Numeric, Boolean, ForeignKey, DateTime, UniqueConstraint, Index,
)
from sqlalchemy.orm import declarative_base
from pydantic import BaseModel, ConfigDict, Field, field_validator

Base = declarative_base()

MONEY = Numeric(10, 2)


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role(str, enum.Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    ADMIN = "admin"


class AuctionStatus(str, enum.Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    ENDED = "ended"
    SOLD = "sold"
    CANCELLED = "cancelled"


class EndOutcome(str, enum.Enum):
    NO_BIDS = "NO_BIDS"
    RESERVE_NOT_MET = "RESERVE_NOT_MET"
    SOLD = "SOLD"
    CANCELLED = "CANCELLED"


# Ended without a sale: eligible for relist / convert / unlist.
UNSOLD_OUTCOMES = (EndOutcome.NO_BIDS.value, EndOutcome.RESERVE_NOT_MET.value)


class BidStatus(str, enum.Enum):
    ACTIVE = "active"
    OUTBID = "outbid"
    WINNING = "winning"
    WON = "won"
    LOST = "lost"


class WinStatus(str, enum.Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    PAID = "paid"
    COMPLETED = "completed"


class ItemType(str, enum.Enum):
    BOOK = "book"
    PRODUCT = "product"


class EndPolicy(str, enum.Enum):
    NONE = "NONE"
    RELIST_AUCTION = "RELIST_AUCTION"
    CONVERT_FIXED = "CONVERT_FIXED"
    UNLIST = "UNLIST"


class PriceSource(str, enum.Enum):
    MANUAL = "MANUAL"
    RESERVE = "RESERVE"
    HIGHEST_BID = "HIGHEST_BID"
    STARTING_BID = "STARTING_BID"


# =========================
# DATABASE MODELS
# =========================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String, unique=True, index=True, nullable=False)
    password = Column(String, nullable=False)
    role = Column(String, nullable=False, default=Role.CUSTOMER.value)


class Vendor(Base):
    __tablename__ = "vendors"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    shop_name = Column(String)
    commission_rate = Column(Numeric(5, 4), nullable=True)
    balance_available = Column(MONEY, nullable=False, default=Decimal("0"))
    lifetime_gross_sales = Column(MONEY, nullable=False, default=Decimal("0"))
    lifetime_commission_taken = Column(MONEY, nullable=False, default=Decimal("0"))
    lifetime_vendor_earnings = Column(MONEY, nullable=False, default=Decimal("0"))
    total_sales = Column(Integer, nullable=False, default=0)


class Auction(Base):
    __tablename__ = "auctions"

    id = Column(Integer, primary_key=True)
    auctionable_type = Column(String(20), nullable=False)
    auctionable_id = Column(String(255), nullable=False)
    item_title = Column(String)
    vendor_id = Column(Integer, ForeignKey("vendors.id"), nullable=False, index=True)

    starting_price = Column(MONEY, nullable=False)
    reserve_price = Column(MONEY, nullable=True)
    current_bid = Column(MONEY, nullable=True)
    bid_count = Column(Integer, nullable=False, default=0)

    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=AuctionStatus.UPCOMING.value, index=True)

    winner_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    winner_bid_id = Column(Integer, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    end_outcome_reason = Column(String(30), nullable=True)
    payment_window_hours = Column(Integer, nullable=False, default=48)
    payment_deadline = Column(DateTime, nullable=True)

    relist_count = Column(Integer, nullable=False, default=0)
    parent_auction_id = Column(Integer, ForeignKey("auctions.id"), nullable=True)

    end_policy_on_no_sale = Column(String(20), nullable=False, default=EndPolicy.NONE.value)
    end_policy_relist_delay_hours = Column(Integer, nullable=False, default=0)
    end_policy_relist_max_count = Column(Integer, nullable=False, default=0)
    end_policy_convert_price_source = Column(String(20), nullable=False, default=PriceSource.MANUAL.value)
    end_policy_convert_price_markup_bps = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_auction_item", "auctionable_type", "auctionable_id"),
        Index("idx_auction_status_end", "status", "end_date"),
    )


class Bid(Base):
    __tablename__ = "bids"

    id = Column(Integer, primary_key=True)
    auction_id = Column(Integer, ForeignKey("auctions.id"), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    amount = Column(MONEY, nullable=False)
    max_amount = Column(MONEY, nullable=True)
    status = Column(String(20), nullable=False, default=BidStatus.ACTIVE.value)
    is_auto_bid = Column(Boolean, nullable=False, default=False)
    idempotency_key = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("idempotency_key"),
        Index("idx_bid_auction_created", "auction_id", "created_at"),
        Index("idx_bid_auction_user", "auction_id", "user_id"),
    )


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_number = Column(String, unique=True, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    total = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    auction_id = Column(Integer, ForeignKey("auctions.id"), nullable=True)
    vendor_id = Column(Integer, ForeignKey("vendors.id"), nullable=True)
    shipping_address = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class AuctionWin(Base):
    __tablename__ = "auction_wins"

    id = Column(Integer, primary_key=True)
    auction_id = Column(Integer, ForeignKey("auctions.id"), unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    winning_bid_id = Column(Integer, ForeignKey("bids.id"), nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    winning_amount = Column(MONEY, nullable=False)
    status = Column(String(20), nullable=False, default=WinStatus.PENDING.value, index=True)
    won_at = Column(DateTime, default=utcnow)
    paid_at = Column(DateTime, nullable=True)


class VendorEarning(Base):
    __tablename__ = "vendor_earnings"

    id = Column(Integer, primary_key=True)
    vendor_id = Column(Integer, ForeignKey("vendors.id"), index=True, nullable=False)
    auction_id = Column(Integer, ForeignKey("auctions.id"), unique=True, nullable=False)
    amount = Column(MONEY, nullable=False)
    platform_fee = Column(MONEY, nullable=False)
    net_amount = Column(MONEY, nullable=False)
    commission_rate_bps = Column(Integer, nullable=False)
    transaction_type = Column(String(20), nullable=False, default="auction_sale")
    status = Column(String(20), nullable=False, default="pending")
    created_at = Column(DateTime, default=utcnow)


# =========================
# PYDANTIC SCHEMAS
# =========================

def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class UserCreate(BaseModel):
    email: str
    password: str
    role: Role = Role.CUSTOMER
    shop_name: Optional[str] = None


class AuctionCreate(BaseModel):
    auctionable_type: ItemType
    auctionable_id: str
    item_title: Optional[str] = None
    vendor_id: Optional[int] = None  # admins only
    starting_price: Decimal = Field(gt=0)
    reserve_price: Optional[Decimal] = Field(default=None, ge=0)
    start_date: Optional[datetime] = None
    end_date: datetime
    payment_window_hours: int = Field(default=48, gt=0)

    normalize_dates = field_validator("start_date", "end_date")(_to_naive_utc)


class AuctionUpdate(BaseModel):
    starting_price: Optional[Decimal] = Field(default=None, gt=0)
    reserve_price: Optional[Decimal] = Field(default=None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    normalize_dates = field_validator("start_date", "end_date")(_to_naive_utc)


class EndPolicyUpdate(BaseModel):
    end_policy_on_no_sale: Optional[EndPolicy] = None
    end_policy_relist_delay_hours: Optional[int] = Field(default=None, ge=0)
    end_policy_relist_max_count: Optional[int] = Field(default=None, ge=0)
    end_policy_convert_price_source: Optional[PriceSource] = None
    end_policy_convert_price_markup_bps: Optional[int] = Field(default=None, ge=0)


class RelistRequest(BaseModel):
    starting_price: Optional[Decimal] = Field(default=None, gt=0)
    reserve_price: Optional[Decimal] = Field(default=None, ge=0)
    duration_days: Optional[int] = Field(default=None, gt=0)


class ConvertRequest(BaseModel):
    price: Optional[Decimal] = Field(default=None, gt=0)


class BidCreate(BaseModel):
    amount: Decimal
    max_amount: Optional[Decimal] = None
    idempotency_key: Optional[str] = None


class ClaimRequest(BaseModel):
    shipping_address: Optional[str] = None


class AuctionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    auctionable_type: str
    auctionable_id: str
    item_title: Optional[str] = None
    vendor_id: int
    starting_price: float
    reserve_price: Optional[float] = None
    current_bid: Optional[float] = None
    bid_count: int
    start_date: datetime
    end_date: datetime
    status: str
    winner_id: Optional[int] = None
    winner_bid_id: Optional[int] = None
    ended_at: Optional[datetime] = None
    end_outcome_reason: Optional[str] = None
    payment_deadline: Optional[datetime] = None
    relist_count: int
    parent_auction_id: Optional[int] = None
    end_policy_on_no_sale: str
    end_policy_relist_delay_hours: int
    end_policy_relist_max_count: int
    end_policy_convert_price_source: str
    end_policy_convert_price_markup_bps: int


class BidOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    auction_id: int
    user_id: int
    amount: float
    status: str
    is_auto_bid: bool
    created_at: Optional[datetime] = None


class BidResult(BaseModel):
    message: str
    bid: BidOut
    current_bid: float
    outbid_by_proxy: bool = False


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    status: str
    total: float
    currency: str


class WinningOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    auction_id: int
    user_id: int
    winning_bid_id: Optional[int] = None
    order_id: Optional[int] = None
    winning_amount: float
    status: str
    won_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class Page(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class AuctionPage(BaseModel):
    data: List[AuctionOut]
    pagination: Page


class BidPage(BaseModel):
    data: List[BidOut]
    pagination: Page


class WinningPage(BaseModel):
    data: List[WinningOut]
    pagination: Page


def page_meta(total: int, page: int, limit: int) -> Page:
    return Page(total=total, page=page, limit=limit, pages=-(-total // limit) if limit else 0)
