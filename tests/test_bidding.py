from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi import HTTPException
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import update
from sqlalchemy.future import select

import bidding
import lifecycle
from conftest import fetch, fetch_all
from models import Auction, Bid, AuctionStatus, BidStatus, utcnow


async def bid(session_factory, auction, user, amount, **kwargs):
    async with session_factory() as session:
        return await bidding.place_bid(auction.id, user, Decimal(str(amount)), session, **kwargs)


async def bids_for(session_factory, auction):
    return await fetch_all(
        session_factory,
        select(Bid).where(Bid.auction_id == auction.id).order_by(Bid.id),
    )


async def test_first_bid_must_meet_starting_price(session_factory, make_auction, alice, redis_events):
    auction = await make_auction(starting_price=Decimal("25.00"))

    with pytest.raises(HTTPException) as exc:
        await bid(session_factory, auction, alice, "24.99")
    assert exc.value.status_code == 400
    assert exc.value.detail == "Bid must be at least $25.00"

    result = await bid(session_factory, auction, alice, "25.00")
    assert result["current_bid"] == Decimal("25.00")
    assert result["bid"].status == BidStatus.WINNING.value


async def test_next_bid_needs_increment(session_factory, make_auction, alice, bob, redis_events):
    auction = await make_auction()
    await bid(session_factory, auction, alice, "10")

    with pytest.raises(HTTPException) as exc:
        await bid(session_factory, auction, bob, "10.50")
    assert exc.value.status_code == 400
    assert "11.00" in exc.value.detail

    await bid(session_factory, auction, bob, "11")
    stored = await fetch(session_factory, Auction, auction.id)
    assert stored.current_bid == Decimal("11.00")
    assert stored.bid_count == 2


async def test_previous_leader_is_marked_outbid(session_factory, make_auction, alice, bob, redis_events):
    auction = await make_auction()
    await bid(session_factory, auction, alice, "10")
    await bid(session_factory, auction, bob, "15")

    bids = await bids_for(session_factory, auction)
    assert [(b.user_id, b.status) for b in bids] == [
        (alice.id, BidStatus.OUTBID.value),
        (bob.id, BidStatus.WINNING.value),
    ]


async def test_only_one_winning_bid_after_many_bids(session_factory, make_auction, alice, bob, carol, redis_events):
    auction = await make_auction()
    for user, amount in [(alice, 10), (bob, 12), (carol, 14), (alice, 20), (bob, 21)]:
        await bid(session_factory, auction, user, amount)

    bids = await bids_for(session_factory, auction)
    winning = [b for b in bids if b.status == BidStatus.WINNING.value]
    assert len(winning) == 1
    assert winning[0].amount == max(b.amount for b in bids)

    stored = await fetch(session_factory, Auction, auction.id)
    assert stored.current_bid == winning[0].amount


async def test_leader_cannot_outbid_themself(session_factory, make_auction, alice, redis_events):
    auction = await make_auction()
    await bid(session_factory, auction, alice, "10")

    with pytest.raises(HTTPException) as exc:
        await bid(session_factory, auction, alice, "50")
    assert exc.value.status_code == 400
    assert exc.value.detail == "You already have the highest bid on this auction"


async def test_vendor_cannot_bid_on_own_auction(session_factory, make_auction, seller, redis_events):
    auction = await make_auction()

    with pytest.raises(HTTPException) as exc:
        await bid(session_factory, auction, seller, "10")
    assert exc.value.status_code == 403


@pytest.mark.parametrize("status", [AuctionStatus.UPCOMING, AuctionStatus.SOLD, AuctionStatus.CANCELLED])
async def test_bids_rejected_unless_active(session_factory, make_auction, alice, redis_events, status):
    auction = await make_auction(status=status.value)

    with pytest.raises(HTTPException) as exc:
        await bid(session_factory, auction, alice, "10")
    assert exc.value.detail == "Auction is not active"


async def test_bid_after_end_date_rejected(session_factory, make_auction, alice, redis_events):
    now = utcnow()
    auction = await make_auction(start_date=now - timedelta(days=2), end_date=now - timedelta(seconds=1))

    with pytest.raises(HTTPException) as exc:
        await bid(session_factory, auction, alice, "10")
    assert exc.value.detail == "Auction has ended"


async def test_bid_before_start_rejected(session_factory, make_auction, alice, redis_events):
    now = utcnow()
    auction = await make_auction(start_date=now + timedelta(hours=1), end_date=now + timedelta(days=1))

    with pytest.raises(HTTPException) as exc:
        await bid(session_factory, auction, alice, "10")
    assert exc.value.detail == "Auction has not started"


async def test_unknown_auction_is_404(session_factory, alice, redis_events):
    async with session_factory() as session:
        with pytest.raises(HTTPException) as exc:
            await bidding.place_bid(999, alice, Decimal("10"), session)
    assert exc.value.status_code == 404


@pytest.mark.parametrize("amount", ["0", "-5"])
async def test_non_positive_amount_rejected(session_factory, make_auction, alice, redis_events, amount):
    auction = await make_auction()

    with pytest.raises(HTTPException) as exc:
        await bid(session_factory, auction, alice, amount)
    assert exc.value.detail == "Invalid bid amount"


async def test_repeated_idempotency_key_is_ignored(session_factory, make_auction, alice, redis_events):
    auction = await make_auction()
    first = await bid(session_factory, auction, alice, "10", idempotency_key="k-1")
    again = await bid(session_factory, auction, alice, "10", idempotency_key="k-1")

    assert again["message"] == "Duplicate ignored"
    assert again["bid"].id == first["bid"].id
    assert len(await bids_for(session_factory, auction)) == 1


async def test_idempotency_key_of_other_user_conflicts(session_factory, make_auction, alice, bob, redis_events):
    auction = await make_auction()
    await bid(session_factory, auction, alice, "10", idempotency_key="shared")

    with pytest.raises(HTTPException) as exc:
        await bid(session_factory, auction, bob, "12", idempotency_key="shared")
    assert exc.value.status_code == 409


async def test_key_committed_mid_request_returns_original_bid(session_factory, make_auction, alice, redis_events, monkeypatch):
    auction = await make_auction()
    original = bidding.current_leader
    committed = {}

    async def original_lands_first(db, auction_id):
        # The first request with this key commits while the retry is in flight
        async with session_factory() as other:
            first = Bid(
                auction_id=auction_id,
                user_id=alice.id,
                amount=Decimal("10.00"),
                status=BidStatus.ACTIVE.value,
                idempotency_key="retry-key",
            )
            other.add(first)
            await other.commit()
            committed["id"] = first.id
        return await original(db, auction_id)

    monkeypatch.setattr(bidding, "current_leader", original_lands_first)

    result = await bid(session_factory, auction, alice, "10", idempotency_key="retry-key")

    assert result["message"] == "Duplicate ignored"
    assert result["bid"].id == committed["id"]
    assert [b.id for b in await bids_for(session_factory, auction)] == [committed["id"]]
    assert (await fetch(session_factory, Auction, auction.id)).current_bid is None


async def test_stale_price_loses_compare_and_raise(session_factory, make_auction, alice, bob, redis_events, monkeypatch):
    auction = await make_auction()
    original = bidding.current_leader

    async def racing_leader(db, auction_id):
        # Another writer raises the price between our read and our write
        async with session_factory() as other:
            await other.execute(
                update(Auction).where(Auction.id == auction_id).values(current_bid=Decimal("30.00"))
            )
            await other.commit()
        return await original(db, auction_id)

    monkeypatch.setattr(bidding, "current_leader", racing_leader)

    with pytest.raises(HTTPException) as exc:
        await bid(session_factory, auction, alice, "10")
    assert exc.value.status_code == 409

    assert await bids_for(session_factory, auction) == []
    stored = await fetch(session_factory, Auction, auction.id)
    assert stored.current_bid == Decimal("30.00")


async def test_proxy_bid_defends_leader(session_factory, make_auction, alice, bob, redis_events):
    auction = await make_auction()
    await bid(session_factory, auction, alice, "10", max_amount=Decimal("50"))

    result = await bid(session_factory, auction, bob, "20")

    assert result["outbid_by_proxy"] is True
    assert result["current_bid"] == Decimal("21.00")

    bids = await bids_for(session_factory, auction)
    assert [(b.user_id, b.amount, b.status, b.is_auto_bid) for b in bids] == [
        (alice.id, Decimal("10.00"), BidStatus.OUTBID.value, False),
        (bob.id, Decimal("20.00"), BidStatus.OUTBID.value, False),
        (alice.id, Decimal("21.00"), BidStatus.WINNING.value, True),
    ]


async def test_proxy_war_goes_to_higher_maximum(session_factory, make_auction, alice, bob, redis_events):
    auction = await make_auction()
    await bid(session_factory, auction, alice, "10", max_amount=Decimal("50"))

    result = await bid(session_factory, auction, bob, "20", max_amount=Decimal("100"))

    assert result["outbid_by_proxy"] is False
    assert result["current_bid"] == Decimal("51.00")
    assert result["bid"].user_id == bob.id
    assert result["bid"].status == BidStatus.WINNING.value

    stored = await fetch(session_factory, Auction, auction.id)
    assert stored.bid_count == 4


async def test_proxy_does_not_fire_when_maximum_is_exhausted(session_factory, make_auction, alice, bob, redis_events):
    auction = await make_auction()
    await bid(session_factory, auction, alice, "10", max_amount=Decimal("20"))

    result = await bid(session_factory, auction, bob, "20")

    assert result["outbid_by_proxy"] is False
    assert result["current_bid"] == Decimal("20.00")


async def test_higher_maximum_wins_by_less_than_an_increment(session_factory, make_auction, alice, bob, redis_events):
    auction = await make_auction()
    await bid(session_factory, auction, alice, "10", max_amount=Decimal("50"))

    result = await bid(session_factory, auction, bob, "20", max_amount=Decimal("50.50"))

    assert result["outbid_by_proxy"] is False
    assert result["current_bid"] == Decimal("50.50")
    assert result["bid"].user_id == bob.id

    bids = await bids_for(session_factory, auction)
    assert [(b.user_id, b.amount, b.status) for b in bids[-3:]] == [
        (bob.id, Decimal("20.00"), BidStatus.OUTBID.value),
        (alice.id, Decimal("50.00"), BidStatus.OUTBID.value),
        (bob.id, Decimal("50.50"), BidStatus.WINNING.value),
    ]


async def test_leader_defends_one_increment_over_challenger_maximum(session_factory, make_auction, alice, bob, redis_events):
    auction = await make_auction()
    await bid(session_factory, auction, alice, "10", max_amount=Decimal("50"))

    result = await bid(session_factory, auction, bob, "20", max_amount=Decimal("30"))

    assert result["outbid_by_proxy"] is True
    assert result["current_bid"] == Decimal("31.00")

    bids = await bids_for(session_factory, auction)
    assert [(b.user_id, b.amount, b.status, b.is_auto_bid) for b in bids[-3:]] == [
        (bob.id, Decimal("20.00"), BidStatus.OUTBID.value, False),
        (bob.id, Decimal("30.00"), BidStatus.OUTBID.value, True),
        (alice.id, Decimal("31.00"), BidStatus.WINNING.value, True),
    ]


async def test_equal_maximums_stay_with_earlier_bidder(session_factory, make_auction, alice, bob, redis_events):
    auction = await make_auction()
    await bid(session_factory, auction, alice, "10", max_amount=Decimal("50"))

    result = await bid(session_factory, auction, bob, "20", max_amount=Decimal("50"))

    assert result["outbid_by_proxy"] is True
    assert result["current_bid"] == Decimal("50.00")

    async with session_factory() as session:
        closed, _ = await lifecycle.close_auction(session, auction.id)
    assert closed.winner_id == alice.id


def test_resolve_proxy_without_leader():
    assert bidding.resolve_proxy(None, Decimal("10"), Decimal("99")) == [("challenger", Decimal("10"), False)]


async def test_events_published_after_bid(session_factory, make_auction, alice, bob, redis_events):
    auction = await make_auction()
    await bid(session_factory, auction, alice, "10")
    await bid(session_factory, auction, bob, "12")

    placed = redis_events.events(f"auction_{auction.id}", "bid_placed")
    assert [e["price"] for e in placed] == [10.0, 12.0]
    assert placed[-1]["bidder_id"] == bob.id

    outbid = redis_events.events(f"user_{alice.id}", "outbid")
    assert len(outbid) == 1
    assert outbid[0]["current_bid"] == 12.0


async def test_redis_outage_does_not_fail_bid(session_factory, make_auction, alice, redis_events):
    redis_events.fail_with = RedisConnectionError("down")
    auction = await make_auction()

    result = await bid(session_factory, auction, alice, "10")

    assert result["message"] == "Bid placed successfully"
    stored = await fetch(session_factory, Auction, auction.id)
    assert stored.current_bid == Decimal("10.00")


async def test_user_active_bids_only_cover_live_auctions(session_factory, make_auction, alice, redis_events):
    live = await make_auction(item_id="1")
    ended = await make_auction(item_id="2")
    await bid(session_factory, live, alice, "10")
    await bid(session_factory, ended, alice, "10")

    async with session_factory() as session:
        await session.execute(
            update(Auction).where(Auction.id == ended.id).values(status=AuctionStatus.ENDED.value)
        )
        await session.commit()
        active = await bidding.list_user_active_bids(session, alice.id)

    assert [b.auction_id for b in active] == [live.id]
