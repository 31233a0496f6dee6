import logging
import uuid
from typing import Optional

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.future import select

from auth import get_vendor_for_user, is_admin
from models import (
    Auction, AuctionWin, Order, User, WinStatus, page_meta, utcnow,
)

logger = logging.getLogger(__name__)


async def list_user_winnings(db, user_id: int, status: Optional[str] = None, page: int = 1, limit: int = 20):
    where = [AuctionWin.user_id == user_id]
    if status:
        where.append(AuctionWin.status == status)

    total = await db.execute(select(func.count(AuctionWin.id)).where(*where))
    result = await db.execute(
        select(AuctionWin)
        .where(*where)
        .order_by(AuctionWin.won_at.desc(), AuctionWin.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    return {
        "data": result.scalars().all(),
        "pagination": page_meta(total.scalar(), page, limit),
    }


async def get_winning(db, auction_id: int, user_id: int, lock: bool = False) -> AuctionWin:
    query = select(AuctionWin).where(
        AuctionWin.auction_id == auction_id,
        AuctionWin.user_id == user_id,
    )
    if lock:
        query = query.with_for_update()

    result = await db.execute(query)
    winning = result.scalar()

    if not winning:
        raise HTTPException(status_code=404, detail="Winning not found")

    return winning


def new_order_number() -> str:
    return f"ORD-{utcnow():%Y%m%d}-{uuid.uuid4().hex[:10].upper()}"


async def claim_winning(db, user: User, auction_id: int, shipping_address: Optional[str] = None):
    """Turn a pending win into an order the winner can pay for."""
    winning = await get_winning(db, auction_id, user.id, lock=True)

    if winning.order_id or winning.status != WinStatus.PENDING.value:
        raise HTTPException(status_code=400, detail="Winning already claimed")

    auction = await db.get(Auction, auction_id)

    order = Order(
        user_id=user.id,
        order_number=new_order_number(),
        status="pending",
        total=winning.winning_amount,
        currency="USD",
        auction_id=auction_id,
        vendor_id=auction.vendor_id if auction else None,
        shipping_address=shipping_address,
    )
    db.add(order)
    await db.flush()

    winning.order_id = order.id
    winning.status = WinStatus.CLAIMED.value
    await db.commit()

    logger.info("Auction %s claimed by user %s as order %s", auction_id, user.id, order.order_number)
    return winning, order


async def pay_winning(db, user: User, auction_id: int, now=None):
    """
    Mark a claimed win as paid.

    Card capture happens in the payment provider before this is called; this
    only records the outcome against the win and its order.
    """
    winning = await get_winning(db, auction_id, user.id, lock=True)

    if not winning.order_id:
        raise HTTPException(status_code=400, detail="Please claim the winning first")

    if winning.status in (WinStatus.PAID.value, WinStatus.COMPLETED.value):
        raise HTTPException(status_code=400, detail="Already paid")

    order = await db.get(Order, winning.order_id)

    winning.status = WinStatus.PAID.value
    winning.paid_at = now or utcnow()
    order.status = "paid"
    await db.commit()

    logger.info("Auction %s paid by user %s", auction_id, user.id)
    return winning, order


async def complete_winning(db, user: User, auction_id: int):
    result = await db.execute(
        select(AuctionWin).where(AuctionWin.auction_id == auction_id).with_for_update()
    )
    winning = result.scalar()
    if not winning:
        raise HTTPException(status_code=404, detail="Winning not found")

    if not is_admin(user):
        auction = await db.get(Auction, auction_id)
        vendor = await get_vendor_for_user(db, user)
        if not vendor or not auction or vendor.id != auction.vendor_id:
            raise HTTPException(status_code=403, detail="Unauthorized")

    if winning.status != WinStatus.PAID.value:
        raise HTTPException(status_code=400, detail="Only paid winnings can be completed")

    order = await db.get(Order, winning.order_id)
    winning.status = WinStatus.COMPLETED.value
    order.status = "completed"
    await db.commit()

    logger.info("Auction %s fulfilment completed", auction_id)
    return winning, order
