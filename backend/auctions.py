import logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.future import select

import config
import notifications
from auth import get_vendor_for_user, is_admin
from lifecycle import lock_auction
from models import (
    Auction, Bid, Vendor, User, AuctionStatus, PriceSource,
    UNSOLD_OUTCOMES, page_meta, utcnow,
)

logger = logging.getLogger(__name__)

OPEN_AUCTION_STATUSES = (AuctionStatus.UPCOMING.value, AuctionStatus.ACTIVE.value)


async def get_auction_or_404(db, auction_id: int) -> Auction:
    auction = await db.get(Auction, auction_id)
    if not auction:
        raise HTTPException(status_code=404, detail="Auction not found")
    return auction


async def ensure_can_manage(db, auction: Auction, user: User):
    """Only the owning vendor or an admin may change an auction."""
    if is_admin(user):
        return
    vendor = await get_vendor_for_user(db, user)
    if not vendor or vendor.id != auction.vendor_id:
        raise HTTPException(status_code=403, detail="Unauthorized")


def ensure_unsold(auction: Auction, action: str):
    if auction.status != AuctionStatus.ENDED.value or auction.end_outcome_reason not in UNSOLD_OUTCOMES:
        raise HTTPException(status_code=400, detail=f"Only unsold auctions can be {action}")


async def create_auction(db, user: User, data, now=None):
    now = now or utcnow()

    if is_admin(user):
        if data.vendor_id is None:
            raise HTTPException(status_code=400, detail="vendor_id is required")
        vendor = await db.get(Vendor, data.vendor_id)
        if not vendor:
            raise HTTPException(status_code=400, detail="Item does not have a valid vendor")
    else:
        vendor = await get_vendor_for_user(db, user)
        if not vendor:
            raise HTTPException(status_code=400, detail="Vendor profile not found")

    start_date = data.start_date or now
    if data.end_date <= start_date:
        raise HTTPException(status_code=400, detail="end_date must be after start_date")
    if data.end_date <= now:
        raise HTTPException(status_code=400, detail="end_date must be in the future")

    existing = await db.execute(
        select(Auction.id).where(
            Auction.auctionable_type == data.auctionable_type.value,
            Auction.auctionable_id == str(data.auctionable_id),
            Auction.status.in_(OPEN_AUCTION_STATUSES),
        )
    )
    if existing.scalar():
        raise HTTPException(status_code=400, detail="An active auction already exists for this item")

    auction = Auction(
        auctionable_type=data.auctionable_type.value,
        auctionable_id=str(data.auctionable_id),
        item_title=data.item_title,
        vendor_id=vendor.id,
        starting_price=data.starting_price,
        reserve_price=data.reserve_price,
        current_bid=None,
        bid_count=0,
        start_date=start_date,
        end_date=data.end_date,
        payment_window_hours=data.payment_window_hours,
        status=AuctionStatus.UPCOMING.value if start_date > now else AuctionStatus.ACTIVE.value,
    )
    db.add(auction)
    await db.commit()
    await db.refresh(auction)

    logger.info("Auction %s created for %s %s", auction.id, auction.auctionable_type, auction.auctionable_id)
    return auction


async def update_auction(db, user: User, auction_id: int, data, now=None):
    now = now or utcnow()
    auction = await lock_auction(db, auction_id)
    await ensure_can_manage(db, auction, user)

    if auction.status not in OPEN_AUCTION_STATUSES:
        raise HTTPException(status_code=400, detail="Auction already closed")

    if auction.status == AuctionStatus.ACTIVE.value and auction.current_bid is not None:
        raise HTTPException(status_code=400, detail="Cannot update auction with active bids")

    updates = data.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in updates.items():
        setattr(auction, field, value)

    if auction.end_date <= auction.start_date:
        await db.rollback()
        raise HTTPException(status_code=400, detail="end_date must be after start_date")
    if "end_date" in updates and auction.end_date <= now:
        await db.rollback()
        raise HTTPException(status_code=400, detail="end_date must be in the future")

    if "start_date" in updates:
        auction.status = AuctionStatus.UPCOMING.value if auction.start_date > now else AuctionStatus.ACTIVE.value

    await db.commit()
    await db.refresh(auction)
    return auction


async def list_auctions(db, status=None, item_type=None, page: int = 1, limit: int = 20):
    where = []
    if status and status != "all":
        where.append(Auction.status == status)
    if item_type:
        where.append(Auction.auctionable_type == item_type)

    total = await db.execute(select(func.count(Auction.id)).where(*where))
    result = await db.execute(
        select(Auction)
        .where(*where)
        .order_by(Auction.end_date.asc(), Auction.id.asc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    return {
        "data": result.scalars().all(),
        "pagination": page_meta(total.scalar(), page, limit),
    }


async def update_end_policy(db, user: User, auction_id: int, data):
    auction = await lock_auction(db, auction_id)
    await ensure_can_manage(db, auction, user)

    if auction.status not in OPEN_AUCTION_STATUSES:
        raise HTTPException(status_code=400, detail="Can only update policy for upcoming or active auctions")

    for field, value in data.model_dump(exclude_none=True).items():
        setattr(auction, field, value.value if hasattr(value, "value") else value)

    await db.commit()
    await db.refresh(auction)
    return auction


async def relist_auction(db, user: User, auction_id: int, data, now=None):
    original = await lock_auction(db, auction_id)
    await ensure_can_manage(db, original, user)
    ensure_unsold(original, "relisted")

    max_relists = original.end_policy_relist_max_count or 0
    if max_relists > 0 and original.relist_count >= max_relists:
        raise HTTPException(status_code=400, detail=f"Maximum relist limit ({max_relists}) reached")

    existing = await db.execute(
        select(Auction.id).where(
            Auction.auctionable_type == original.auctionable_type,
            Auction.auctionable_id == original.auctionable_id,
            Auction.status.in_(OPEN_AUCTION_STATUSES),
        )
    )
    if existing.scalar():
        raise HTTPException(status_code=400, detail="An active auction already exists for this item")

    start_date = now or utcnow()
    duration_days = data.duration_days or config.DEFAULT_RELIST_DURATION_DAYS

    auction = Auction(
        auctionable_type=original.auctionable_type,
        auctionable_id=original.auctionable_id,
        item_title=original.item_title,
        vendor_id=original.vendor_id,
        starting_price=data.starting_price or original.starting_price,
        reserve_price=data.reserve_price if data.reserve_price is not None else original.reserve_price,
        current_bid=None,
        bid_count=0,
        start_date=start_date,
        end_date=start_date + timedelta(days=duration_days),
        status=AuctionStatus.ACTIVE.value,
        relist_count=original.relist_count + 1,
        parent_auction_id=original.parent_auction_id or original.id,
        payment_window_hours=original.payment_window_hours,
        end_policy_on_no_sale=original.end_policy_on_no_sale,
        end_policy_relist_delay_hours=original.end_policy_relist_delay_hours,
        end_policy_relist_max_count=original.end_policy_relist_max_count,
        end_policy_convert_price_source=original.end_policy_convert_price_source,
        end_policy_convert_price_markup_bps=original.end_policy_convert_price_markup_bps,
    )
    db.add(auction)
    await db.commit()
    await db.refresh(auction)

    logger.info("Auction %s relisted as %s (relist #%s)", original.id, auction.id, auction.relist_count)
    return auction


def fixed_price_for(auction: Auction, price=None) -> Decimal:
    """
    Fixed price for an unsold auction item.

    An explicit price wins; otherwise the auction's configured price source
    is used and the basis-point markup applied (100 bps = 1%).
    """
    if price is not None:
        return Decimal(price)

    source = auction.end_policy_convert_price_source or PriceSource.MANUAL.value
    if source == PriceSource.RESERVE.value and auction.reserve_price is not None:
        base = auction.reserve_price
    elif source == PriceSource.HIGHEST_BID.value:
        base = auction.current_bid if auction.current_bid is not None else auction.starting_price
    elif source == PriceSource.STARTING_BID.value:
        base = auction.starting_price
    else:
        raise HTTPException(status_code=400, detail="Price required for manual conversion")

    markup_bps = auction.end_policy_convert_price_markup_bps or 0
    fixed = Decimal(base) * (1 + Decimal(markup_bps) / 10000)
    return fixed.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


async def convert_to_fixed(db, user: User, auction_id: int, data):
    auction = await lock_auction(db, auction_id)
    await ensure_can_manage(db, auction, user)
    ensure_unsold(auction, "converted to fixed price")

    price = fixed_price_for(auction, data.price)

    auction.status = AuctionStatus.CANCELLED.value
    await db.commit()

    logger.info("Auction %s converted to fixed price %s", auction.id, price)
    await notifications.publish(notifications.auction_channel(auction.id), "auction_converted", {
        "auction_id": auction.id,
        "item_type": auction.auctionable_type,
        "item_id": auction.auctionable_id,
        "price": price,
    })
    return {
        "item_type": auction.auctionable_type,
        "item_id": auction.auctionable_id,
        "price": float(price),
    }


async def unlist_auction(db, user: User, auction_id: int):
    auction = await lock_auction(db, auction_id)
    await ensure_can_manage(db, auction, user)
    ensure_unsold(auction, "unlisted")

    auction.status = AuctionStatus.CANCELLED.value
    await db.commit()

    logger.info("Auction %s unlisted", auction.id)
    await notifications.publish(notifications.auction_channel(auction.id), "auction_unlisted", {
        "auction_id": auction.id,
        "item_type": auction.auctionable_type,
        "item_id": auction.auctionable_id,
    })
    return {"item_type": auction.auctionable_type, "item_id": auction.auctionable_id}


async def auction_stats(db, auction_id: int):
    auction = await get_auction_or_404(db, auction_id)

    total_bids_result = await db.execute(
        select(func.count(Bid.id)).where(Bid.auction_id == auction_id)
    )
    highest_bid_result = await db.execute(
        select(Bid.user_id)
        .where(Bid.auction_id == auction_id)
        .order_by(Bid.amount.desc(), Bid.id.desc())
        .limit(1)
    )

    return {
        "status": auction.status,
        "current_bid": float(auction.current_bid) if auction.current_bid is not None else None,
        "total_bids": total_bids_result.scalar(),
        "highest_bidder": highest_bid_result.scalar(),
        "end_outcome_reason": auction.end_outcome_reason,
    }

