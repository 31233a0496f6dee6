"""
Realtime events published over Redis pub/sub.

Auction channels (``auction_{id}``) feed the websocket relay; user channels
(``user_{id}``) carry personal notices such as "you were outbid". Email and
SMS delivery subscribe to the same channels outside this service.

Publishing happens after the database commit and never fails the caller.
"""

import json
import logging
from decimal import Decimal

from redis.exceptions import RedisError

from redis_client import r

logger = logging.getLogger(__name__)


def auction_channel(auction_id: int) -> str:
    return f"auction_{auction_id}"


def user_channel(user_id: int) -> str:
    return f"user_{user_id}"


def _default(value):
    if isinstance(value, Decimal):
        return float(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    raise TypeError(f"Unserializable event value: {value!r}")


async def publish(channel: str, event: str, payload: dict) -> bool:
    message = json.dumps({"event": event, **payload}, default=_default)
    try:
        await r.publish(channel, message)
    except RedisError as e:
        logger.warning("Failed to publish %s on %s: %s", event, channel, e)
        return False
    return True


async def bid_placed(auction, bid):
    await publish(auction_channel(auction.id), "bid_placed", {
        "auction_id": auction.id,
        "price": auction.current_bid,
        "bid_count": auction.bid_count,
        "bidder_id": bid.user_id,
        "end_date": auction.end_date,
    })


async def outbid(user_id: int, auction, amount):
    await publish(user_channel(user_id), "outbid", {
        "auction_id": auction.id,
        "item_title": auction.item_title,
        "current_bid": amount,
    })


async def auction_closed(auction):
    await publish(auction_channel(auction.id), "auction_closed", {
        "auction_id": auction.id,
        "status": auction.status,
        "reason": auction.end_outcome_reason,
        "winner_id": auction.winner_id,
        "price": auction.current_bid,
    })
    if auction.winner_id:
        await publish(user_channel(auction.winner_id), "auction_won", {
            "auction_id": auction.id,
            "item_title": auction.item_title,
            "winning_amount": auction.current_bid,
            "payment_deadline": auction.payment_deadline,
        })
