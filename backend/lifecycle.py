"""
Auction status lifecycle: activation, closing and winner settlement.

Every transition re-reads the auction under a row lock and checks its status
before changing anything, so a manual close racing the background sweep
settles the auction once. The unique constraint on ``auction_wins.auction_id``
backs that up at the database level.
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP

from fastapi import HTTPException
from sqlalchemy import update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.future import select

import config
import notifications
from models import (
    Auction, Bid, AuctionWin, Vendor, VendorEarning,
    AuctionStatus, BidStatus, EndOutcome, EndPolicy, WinStatus, utcnow,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

CLOSED_STATUSES = (
    AuctionStatus.ENDED.value,
    AuctionStatus.SOLD.value,
    AuctionStatus.CANCELLED.value,
)


async def lock_auction(db, auction_id: int):
    result = await db.execute(
        select(Auction)
        .where(Auction.id == auction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    auction = result.scalar()

    if not auction:
        raise HTTPException(status_code=404, detail="Auction not found")

    return auction


async def record_commission(db, auction: Auction, winning_amount: Decimal):
    """Book the platform fee and credit the vendor inside the caller's transaction."""
    result = await db.execute(
        select(Vendor)
        .where(Vendor.id == auction.vendor_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    vendor = result.scalar()
    if not vendor:
        logger.warning("Auction %s has no vendor row, skipping commission", auction.id)
        return None

    gross = Decimal(winning_amount)
    rate = Decimal(vendor.commission_rate) if vendor.commission_rate is not None else config.DEFAULT_COMMISSION_RATE
    fee = (gross * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    net = gross - fee

    earning = VendorEarning(
        vendor_id=vendor.id,
        auction_id=auction.id,
        amount=gross,
        platform_fee=fee,
        net_amount=net,
        commission_rate_bps=int((rate * 10000).to_integral_value(rounding=ROUND_HALF_UP)),
    )
    db.add(earning)

    vendor.balance_available = Decimal(vendor.balance_available or 0) + net
    vendor.lifetime_gross_sales = Decimal(vendor.lifetime_gross_sales or 0) + gross
    vendor.lifetime_commission_taken = Decimal(vendor.lifetime_commission_taken or 0) + fee
    vendor.lifetime_vendor_earnings = Decimal(vendor.lifetime_vendor_earnings or 0) + net
    vendor.total_sales = (vendor.total_sales or 0) + 1

    return earning


async def close_auction(db, auction_id: int, now=None):
    """
    Close one auction and settle its winner.

    Returns ``(auction, closed)``; ``closed`` is False when the auction had
    already been closed by someone else.
    """
    auction = await lock_auction(db, auction_id)

    if auction.status in CLOSED_STATUSES:
        await db.commit()
        return auction, False

    ended_at = now or utcnow()

    highest_result = await db.execute(
        select(Bid)
        .where(Bid.auction_id == auction_id, Bid.status == BidStatus.WINNING.value)
        .order_by(Bid.amount.desc(), Bid.id.desc())
        .limit(1)
    )
    highest = highest_result.scalar()

    auction.ended_at = ended_at
    auction.winner_id = None
    auction.winner_bid_id = None
    auction.payment_deadline = None

    if highest is None:
        auction.status = AuctionStatus.ENDED.value
        auction.end_outcome_reason = EndOutcome.NO_BIDS.value
    elif auction.reserve_price is not None and Decimal(highest.amount) < Decimal(auction.reserve_price):
        auction.status = AuctionStatus.ENDED.value
        auction.end_outcome_reason = EndOutcome.RESERVE_NOT_MET.value
        auction.winner_bid_id = highest.id
        await db.execute(
            update(Bid)
            .where(Bid.auction_id == auction_id)
            .values(status=BidStatus.LOST.value)
            .execution_options(synchronize_session=False)
        )
    else:
        auction.status = AuctionStatus.SOLD.value
        auction.end_outcome_reason = EndOutcome.SOLD.value
        auction.winner_id = highest.user_id
        auction.winner_bid_id = highest.id
        auction.payment_deadline = ended_at + timedelta(hours=auction.payment_window_hours or config.DEFAULT_PAYMENT_WINDOW_HOURS)

        await db.execute(
            update(Bid)
            .where(Bid.id == highest.id)
            .values(status=BidStatus.WON.value)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(Bid)
            .where(Bid.auction_id == auction_id, Bid.id != highest.id)
            .values(status=BidStatus.LOST.value)
            .execution_options(synchronize_session=False)
        )

        db.add(AuctionWin(
            auction_id=auction_id,
            user_id=highest.user_id,
            winning_bid_id=highest.id,
            winning_amount=highest.amount,
            status=WinStatus.PENDING.value,
            won_at=ended_at,
        ))
        await record_commission(db, auction, highest.amount)

    try:
        await db.commit()
    except IntegrityError:
        # Another closer settled it first
        await db.rollback()
        logger.info("Auction %s already settled", auction_id)
        auction = await db.get(Auction, auction_id, populate_existing=True)
        return auction, False

    logger.info(
        "Auction %s ended: %s | reason: %s | winner: %s",
        auction_id, auction.status, auction.end_outcome_reason, auction.winner_id,
    )
    await notifications.auction_closed(auction)

    if auction.end_outcome_reason != EndOutcome.SOLD.value:
        log_end_policy(auction)

    return auction, True


def log_end_policy(auction: Auction):
    policy = auction.end_policy_on_no_sale
    if not policy or policy == EndPolicy.NONE.value:
        return

    max_relists = auction.end_policy_relist_max_count or 0
    if policy == EndPolicy.RELIST_AUCTION.value and max_relists > 0 and auction.relist_count >= max_relists:
        logger.info("Auction %s reached max relists (%s), skipping relist", auction.id, max_relists)
        return

    execute_at = auction.ended_at + timedelta(hours=auction.end_policy_relist_delay_hours or 0)
    logger.info("Auction %s end policy %s due at %s", auction.id, policy, execute_at.isoformat())


async def cancel_auction(db, auction_id: int, now=None):
    auction = await lock_auction(db, auction_id)

    if auction.status == AuctionStatus.SOLD.value:
        raise HTTPException(status_code=400, detail="Cannot cancel sold auction")
    if auction.status in CLOSED_STATUSES:
        raise HTTPException(status_code=400, detail="Auction already closed")

    auction.status = AuctionStatus.CANCELLED.value
    auction.end_outcome_reason = EndOutcome.CANCELLED.value
    auction.ended_at = now or utcnow()

    await db.execute(
        update(Bid)
        .where(Bid.auction_id == auction_id)
        .values(status=BidStatus.LOST.value)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    logger.info("Auction %s cancelled", auction_id)
    await notifications.auction_closed(auction)
    return auction


async def activate_due_auctions(db, now=None) -> int:
    now = now or utcnow()
    result = await db.execute(
        update(Auction)
        .where(
            Auction.status == AuctionStatus.UPCOMING.value,
            Auction.start_date <= now,
        )
        .values(status=AuctionStatus.ACTIVE.value)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0


async def close_expired_auctions(session_factory, now=None) -> int:
    now = now or utcnow()

    async with session_factory() as db:
        result = await db.execute(
            select(Auction.id)
            .where(
                Auction.status == AuctionStatus.ACTIVE.value,
                Auction.end_date <= now,
            )
            .order_by(Auction.end_date)
        )
        due = result.scalars().all()

    closed = 0
    for auction_id in due:
        # One session per auction so a failure only rolls back that auction
        async with session_factory() as db:
            try:
                _, did_close = await close_auction(db, auction_id, now=now)
            except Exception:
                logger.exception("Auction %s failed to close", auction_id)
                continue
        if did_close:
            closed += 1

    return closed


async def update_auction_statuses(session_factory, now=None) -> dict:
    now = now or utcnow()

    async with session_factory() as db:
        activated = await activate_due_auctions(db, now)
    ended = await close_expired_auctions(session_factory, now)

    if activated or ended:
        logger.info("Auction statuses updated: %s activated, %s ended", activated, ended)

    return {"activated": activated, "ended": ended}


async def auction_status_counts(db) -> dict:
    result = await db.execute(
        select(Auction.status, func.count(Auction.id)).group_by(Auction.status)
    )
    return {status: count for status, count in result.all()}


class AuctionSweeper:
    """Background task that keeps auction statuses in step with the clock."""

    def __init__(self, session_factory, interval: float = config.AUCTION_SWEEP_INTERVAL_SECONDS):
        self.session_factory = session_factory
        self.interval = interval
        self._task = None
        self._stopping = asyncio.Event()
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="auction-sweeper")
        self._logger.info("started, interval=%ss", self.interval)

    async def stop(self):
        if not self.running:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=self.interval + 5)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._task = None
        self._logger.info("stopped")

    async def sweep_once(self):
        return await update_auction_statuses(self.session_factory)

    async def _run(self):
        while not self._stopping.is_set():
            try:
                await self.sweep_once()
            except Exception:
                self._logger.exception("sweep failed")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
