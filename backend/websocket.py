import asyncio
import json
import logging

from fastapi import WebSocket, WebSocketDisconnect, HTTPException
from sqlalchemy.future import select

from redis_client import r
from auth import verify_token
from database import AsyncSessionLocal
from models import Auction
from notifications import auction_channel

logger = logging.getLogger(__name__)


def snapshot(auction: Auction) -> str:
    return json.dumps({
        "event": "snapshot",
        "auction_id": auction.id,
        "status": auction.status,
        "price": float(auction.current_bid) if auction.current_bid is not None else None,
        "starting_price": float(auction.starting_price),
        "bid_count": auction.bid_count,
        "end_date": auction.end_date.isoformat(),
    })


async def relay_messages(websocket: WebSocket, pubsub):
    while True:
        message = await pubsub.get_message(
            ignore_subscribe_messages=True,
            timeout=1.0
        )

        if message:
            data = message["data"]
            if isinstance(data, bytes):
                data = data.decode()

            await websocket.send_text(data)


async def wait_for_disconnect(websocket: WebSocket):
    # Clients only listen; anything they send is dropped
    while True:
        await websocket.receive_text()


async def auction_ws(websocket: WebSocket, auction_id: int, session_factory=AsyncSessionLocal):

    token = websocket.query_params.get("token")

    if not token:
        await websocket.close(code=1008)
        return

    try:
        verify_token(token)
    except HTTPException:
        await websocket.close(code=1008)
        return

    async with session_factory() as db:
        result = await db.execute(
            select(Auction).where(Auction.id == auction_id)
        )
        auction = result.scalar()

        if not auction:
            await websocket.close(code=1008)
            return

    await websocket.accept()

    # send initial state
    await websocket.send_text(snapshot(auction))

    pubsub = r.pubsub()
    channel = auction_channel(auction_id)
    await pubsub.subscribe(channel)

    tasks = {
        asyncio.create_task(relay_messages(websocket, pubsub)),
        asyncio.create_task(wait_for_disconnect(websocket)),
    }
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                raise error
        logger.debug("Websocket for auction %s disconnected", auction_id)
    finally:
        for task in tasks:
            task.cancel()
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
