import logging
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException
from sqlalchemy import update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.future import select

import config
import notifications
from models import (
    Auction, Bid, Vendor, User, AuctionStatus, BidStatus, page_meta, utcnow,
)

logger = logging.getLogger(__name__)

OPEN_BID_STATUSES = (BidStatus.ACTIVE.value, BidStatus.WINNING.value)


def minimum_bid(auction: Auction) -> Decimal:
    if auction.current_bid is None:
        return Decimal(auction.starting_price)
    return Decimal(auction.current_bid) + config.BID_INCREMENT


def resolve_proxy(leader: Optional[Bid], amount: Decimal, max_amount: Optional[Decimal]):
    """
    Work out the bids an incoming bid produces against the current leader.

    Returns a list of ``(owner, amount, is_auto)`` tuples in ledger order, where
    owner is ``"leader"`` or ``"challenger"``; the last tuple is the new
    winning bid.
    """
    inc = config.BID_INCREMENT
    bids = [("challenger", amount, False)]

    if leader is None or leader.max_amount is None:
        return bids

    leader_cap = Decimal(leader.max_amount)
    challenger_cap = max_amount if max_amount is not None else amount

    # Higher maximum leads, one increment over the other maximum at most
    if challenger_cap > leader_cap:
        if leader_cap > amount:
            bids.append(("leader", leader_cap, True))
            bids.append(("challenger", min(challenger_cap, leader_cap + inc), True))
        return bids

    # The leader defends only when it can top the incoming amount; ties stay with the leader
    if leader_cap < amount + inc:
        return bids

    if challenger_cap > amount:
        bids.append(("challenger", challenger_cap, True))
    bids.append(("leader", min(leader_cap, challenger_cap + inc), True))
    return bids


async def current_leader(db, auction_id: int) -> Optional[Bid]:
    result = await db.execute(
        select(Bid)
        .where(Bid.auction_id == auction_id, Bid.status == BidStatus.WINNING.value)
        .order_by(Bid.amount.desc(), Bid.id.asc())
        .limit(1)
    )
    return result.scalar()


async def find_duplicate(db, auction: Auction, bidder: User, idempotency_key: str):
    """Result of an earlier request with the same idempotency key, if any."""
    existing = await db.execute(
        select(Bid).where(Bid.idempotency_key == idempotency_key)
    )
    duplicate = existing.scalar()
    if not duplicate:
        return None

    if duplicate.user_id != bidder.id or duplicate.auction_id != auction.id:
        raise HTTPException(status_code=409, detail="Idempotency key already used")

    return {
        "message": "Duplicate ignored",
        "bid": duplicate,
        "current_bid": auction.current_bid,
        "outbid_by_proxy": duplicate.status == BidStatus.OUTBID.value,
    }


async def place_bid(
    auction_id: int,
    bidder: User,
    amount: Decimal,
    db,
    max_amount: Optional[Decimal] = None,
    idempotency_key: Optional[str] = None,
    now=None,
):
    amount = Decimal(amount)
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Invalid bid amount")

    if max_amount is not None:
        max_amount = Decimal(max_amount)
        if max_amount < amount:
            raise HTTPException(status_code=400, detail="Maximum bid cannot be lower than the bid")

    # Row level lock: bids on one auction are serialized
    result = await db.execute(
        select(Auction)
        .where(Auction.id == auction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    auction = result.scalar()

    if not auction:
        raise HTTPException(status_code=404, detail="Auction not found")

    # Checked under the lock so a retry racing its original sees the committed bid
    if idempotency_key:
        duplicate = await find_duplicate(db, auction, bidder, idempotency_key)
        if duplicate:
            return duplicate

    now = now or utcnow()

    if auction.status != AuctionStatus.ACTIVE.value:
        raise HTTPException(status_code=400, detail="Auction is not active")

    if now < auction.start_date:
        raise HTTPException(status_code=400, detail="Auction has not started")

    if now >= auction.end_date:
        raise HTTPException(status_code=400, detail="Auction has ended")

    owner = await db.execute(select(Vendor.user_id).where(Vendor.id == auction.vendor_id))
    if owner.scalar() == bidder.id:
        raise HTTPException(status_code=403, detail="Vendors cannot bid on their own auctions")

    min_bid = minimum_bid(auction)
    if amount < min_bid:
        raise HTTPException(status_code=400, detail=f"Bid must be at least ${min_bid:.2f}")

    leader = await current_leader(db, auction_id)

    if leader and leader.user_id == bidder.id:
        raise HTTPException(status_code=400, detail="You already have the highest bid on this auction")

    plan = resolve_proxy(leader, amount, max_amount)
    final_owner, final_price, _ = plan[-1]

    # Compare-and-raise: only succeeds if nobody moved the price since we read it
    expected = auction.current_bid
    guard = Auction.current_bid.is_(None) if expected is None else Auction.current_bid == expected
    raised = await db.execute(
        update(Auction)
        .where(
            Auction.id == auction_id,
            Auction.status == AuctionStatus.ACTIVE.value,
            guard,
        )
        .values(current_bid=final_price, bid_count=Auction.bid_count + len(plan))
        .execution_options(synchronize_session=False)
    )
    if raised.rowcount != 1:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Auction price changed, please retry")

    outbid_result = await db.execute(
        select(Bid.user_id)
        .where(Bid.auction_id == auction_id, Bid.status.in_(OPEN_BID_STATUSES))
        .distinct()
    )
    previously_open = set(outbid_result.scalars().all())

    await db.execute(
        update(Bid)
        .where(Bid.auction_id == auction_id, Bid.status.in_(OPEN_BID_STATUSES))
        .values(status=BidStatus.OUTBID.value)
        .execution_options(synchronize_session=False)
    )

    placed = []
    for i, (who, bid_amount, is_auto) in enumerate(plan):
        is_last = i == len(plan) - 1
        bid = Bid(
            auction_id=auction_id,
            user_id=bidder.id if who == "challenger" else leader.user_id,
            amount=bid_amount,
            max_amount=max_amount if who == "challenger" else leader.max_amount,
            status=BidStatus.WINNING.value if is_last else BidStatus.OUTBID.value,
            is_auto_bid=is_auto,
            idempotency_key=idempotency_key if i == 0 else None,
            created_at=now,
        )
        db.add(bid)
        placed.append(bid)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if idempotency_key:
            auction = await db.get(Auction, auction_id, populate_existing=True)
            duplicate = await find_duplicate(db, auction, bidder, idempotency_key)
            if duplicate:
                return duplicate
        raise HTTPException(status_code=400, detail="Duplicate bid detected")

    await db.refresh(auction)
    winner_id = placed[-1].user_id
    logger.info(
        "Bid accepted: auction=%s user=%s amount=%s price=%s proxy_bids=%s",
        auction_id, bidder.id, amount, auction.current_bid, len(plan) - 1,
    )

    # Publish after commit
    await notifications.bid_placed(auction, placed[-1])
    losers = previously_open | {b.user_id for b in placed}
    losers.discard(winner_id)
    for user_id in sorted(losers):
        await notifications.outbid(user_id, auction, auction.current_bid)

    return {
        "message": "Bid placed successfully",
        "bid": placed[-1] if final_owner == "challenger" else placed[0],
        "current_bid": auction.current_bid,
        "outbid_by_proxy": final_owner == "leader",
    }


async def list_auction_bids(db, auction_id: int, page: int = 1, limit: int = 20):
    total = await db.execute(select(func.count(Bid.id)).where(Bid.auction_id == auction_id))
    result = await db.execute(
        select(Bid)
        .where(Bid.auction_id == auction_id)
        .order_by(Bid.amount.desc(), Bid.created_at.desc(), Bid.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    return {
        "data": result.scalars().all(),
        "pagination": page_meta(total.scalar(), page, limit),
    }


async def list_user_bids(db, user_id: int, status: Optional[str] = None, page: int = 1, limit: int = 20):
    where = [Bid.user_id == user_id]
    if status:
        where.append(Bid.status == status)

    total = await db.execute(select(func.count(Bid.id)).where(*where))
    result = await db.execute(
        select(Bid)
        .where(*where)
        .order_by(Bid.created_at.desc(), Bid.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    return {
        "data": result.scalars().all(),
        "pagination": page_meta(total.scalar(), page, limit),
    }


async def list_user_active_bids(db, user_id: int):
    result = await db.execute(
        select(Bid)
        .join(Auction, Auction.id == Bid.auction_id)
        .where(
            Bid.user_id == user_id,
            Bid.status.in_(OPEN_BID_STATUSES + (BidStatus.OUTBID.value,)),
            Auction.status == AuctionStatus.ACTIVE.value,
        )
        .order_by(Bid.created_at.desc(), Bid.id.desc())
    )
    return result.scalars().all()
