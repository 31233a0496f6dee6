import logging
from typing import Optional, List

from fastapi import FastAPI, WebSocket, Depends, HTTPException, Query
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

import config
import auctions
import bidding
import lifecycle
import winnings
from database import engine, get_db, AsyncSessionLocal
from logger import setup_logging
from models import (
    Base, User, Vendor, Role,
    UserCreate, AuctionCreate, AuctionUpdate, EndPolicyUpdate, RelistRequest, ConvertRequest,
    BidCreate, ClaimRequest,
    AuctionOut, AuctionPage, BidOut, BidPage, BidResult, WinningOut, WinningPage, OrderOut,
)
from websocket import auction_ws
from redis_client import r

from auth import (
    hash_password,
    verify_password,
    create_token,
    get_current_user,
    require_role,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Marketplace Auction Bidding API")

sweeper = lifecycle.AuctionSweeper(AsyncSessionLocal)

vendor_or_admin = require_role(Role.VENDOR, Role.ADMIN)
admin_only = require_role(Role.ADMIN)


def get_session_factory():
    return AsyncSessionLocal


@app.on_event("startup")
async def startup():
    setup_logging()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    if config.AUCTION_SWEEP_ENABLED:
        await sweeper.start()
    else:
        logger.info("Auction sweeper disabled")


@app.on_event("shutdown")
async def shutdown():
    await sweeper.stop()
    await r.aclose()
    await engine.dispose()


# =========================
# ACCOUNTS
# =========================

@app.post("/signup", status_code=201)
async def signup(user: UserCreate, db: AsyncSession = Depends(get_db)):
    if user.role == Role.ADMIN:
        raise HTTPException(status_code=403, detail="Admin accounts cannot be self-registered")

    result = await db.execute(select(User).where(User.email == user.email))
    if result.scalar():
        raise HTTPException(status_code=400, detail="User already exists")

    new_user = User(
        email=user.email,
        password=hash_password(user.password),
        role=user.role.value,
    )
    db.add(new_user)
    await db.flush()

    if user.role == Role.VENDOR:
        db.add(Vendor(user_id=new_user.id, shop_name=user.shop_name))

    await db.commit()
    logger.info("User %s signed up as %s", new_user.id, new_user.role)

    return {"message": "User created", "id": new_user.id}


@app.post("/login")
async def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(User).where(User.email == form_data.username)
    )
    db_user = result.scalar()

    if not db_user or not verify_password(form_data.password, db_user.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    token = create_token({"id": db_user.id, "role": db_user.role})

    return {
        "access_token": token,
        "token_type": "bearer"
    }


# =========================
# AUCTIONS
# =========================

@app.get("/auctions", response_model=AuctionPage)
async def list_auctions(
    status: Optional[str] = None,
    type: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db)
):
    return await auctions.list_auctions(db, status=status, item_type=type, page=page, limit=limit)


@app.get("/auctions/{auction_id}", response_model=AuctionOut)
async def get_auction(auction_id: int, db: AsyncSession = Depends(get_db)):
    return await auctions.get_auction_or_404(db, auction_id)


@app.post("/auctions", response_model=AuctionOut, status_code=201)
async def create_auction(
    auction: AuctionCreate,
    current_user: User = Depends(vendor_or_admin),
    db: AsyncSession = Depends(get_db)
):
    return await auctions.create_auction(db, current_user, auction)


@app.patch("/auctions/{auction_id}", response_model=AuctionOut)
async def update_auction(
    auction_id: int,
    data: AuctionUpdate,
    current_user: User = Depends(vendor_or_admin),
    db: AsyncSession = Depends(get_db)
):
    return await auctions.update_auction(db, current_user, auction_id, data)


@app.delete("/auctions/{auction_id}", response_model=AuctionOut)
async def cancel_auction(
    auction_id: int,
    current_user: User = Depends(vendor_or_admin),
    db: AsyncSession = Depends(get_db)
):
    auction = await auctions.get_auction_or_404(db, auction_id)
    await auctions.ensure_can_manage(db, auction, current_user)
    return await lifecycle.cancel_auction(db, auction_id)


@app.post("/auctions/{auction_id}/close", response_model=AuctionOut)
async def close_auction(
    auction_id: int,
    current_user: User = Depends(vendor_or_admin),
    db: AsyncSession = Depends(get_db)
):
    auction = await auctions.get_auction_or_404(db, auction_id)
    await auctions.ensure_can_manage(db, auction, current_user)

    if auction.status in lifecycle.CLOSED_STATUSES:
        raise HTTPException(status_code=400, detail="Auction already closed")

    auction, _ = await lifecycle.close_auction(db, auction_id)
    return auction


@app.patch("/auctions/{auction_id}/end-policy", response_model=AuctionOut)
async def update_end_policy(
    auction_id: int,
    data: EndPolicyUpdate,
    current_user: User = Depends(vendor_or_admin),
    db: AsyncSession = Depends(get_db)
):
    return await auctions.update_end_policy(db, current_user, auction_id, data)


@app.post("/auctions/{auction_id}/relist", response_model=AuctionOut, status_code=201)
async def relist_auction(
    auction_id: int,
    data: RelistRequest,
    current_user: User = Depends(vendor_or_admin),
    db: AsyncSession = Depends(get_db)
):
    return await auctions.relist_auction(db, current_user, auction_id, data)


@app.post("/auctions/{auction_id}/convert-to-fixed")
async def convert_to_fixed(
    auction_id: int,
    data: ConvertRequest,
    current_user: User = Depends(vendor_or_admin),
    db: AsyncSession = Depends(get_db)
):
    return await auctions.convert_to_fixed(db, current_user, auction_id, data)


@app.post("/auctions/{auction_id}/unlist")
async def unlist_auction(
    auction_id: int,
    current_user: User = Depends(vendor_or_admin),
    db: AsyncSession = Depends(get_db)
):
    return await auctions.unlist_auction(db, current_user, auction_id)


# =========================
# BIDS
# =========================

@app.post("/auctions/{auction_id}/bids", response_model=BidResult, status_code=201)
async def bid(
    auction_id: int,
    bid: BidCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await bidding.place_bid(
        auction_id=auction_id,
        bidder=current_user,
        amount=bid.amount,
        max_amount=bid.max_amount,
        idempotency_key=bid.idempotency_key,
        db=db
    )


@app.get("/auctions/{auction_id}/bids", response_model=BidPage)
async def auction_bids(
    auction_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db)
):
    await auctions.get_auction_or_404(db, auction_id)
    return await bidding.list_auction_bids(db, auction_id, page=page, limit=limit)


@app.get("/user/bids", response_model=BidPage)
async def user_bids(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await bidding.list_user_bids(db, current_user.id, status=status, page=page, limit=limit)


@app.get("/user/bids/active", response_model=List[BidOut])
async def user_active_bids(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await bidding.list_user_active_bids(db, current_user.id)


# =========================
# WINNINGS
# =========================

@app.get("/user/winnings", response_model=WinningPage)
async def user_winnings(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await winnings.list_user_winnings(db, current_user.id, status=status, page=page, limit=limit)


@app.get("/auctions/{auction_id}/winning", response_model=WinningOut)
async def auction_winning(
    auction_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await winnings.get_winning(db, auction_id, current_user.id)


@app.post("/auctions/{auction_id}/claim")
async def claim_winning(
    auction_id: int,
    data: ClaimRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    winning, order = await winnings.claim_winning(db, current_user, auction_id, data.shipping_address)
    return {
        "message": "Winning claimed successfully",
        "winning": WinningOut.model_validate(winning),
        "order": OrderOut.model_validate(order),
    }


@app.post("/auctions/{auction_id}/pay")
async def pay_winning(
    auction_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    winning, order = await winnings.pay_winning(db, current_user, auction_id)
    return {
        "message": "Payment processed successfully",
        "winning": WinningOut.model_validate(winning),
        "order": OrderOut.model_validate(order),
    }


@app.post("/auctions/{auction_id}/complete")
async def complete_winning(
    auction_id: int,
    current_user: User = Depends(vendor_or_admin),
    db: AsyncSession = Depends(get_db)
):
    winning, order = await winnings.complete_winning(db, current_user, auction_id)
    return {
        "message": "Winning completed",
        "winning": WinningOut.model_validate(winning),
        "order": OrderOut.model_validate(order),
    }


# =========================
# ADMIN
# =========================

@app.get("/admin/auction-stats/{auction_id}")
async def auction_stats(
    auction_id: int,
    current_user: User = Depends(admin_only),
    db: AsyncSession = Depends(get_db)
):
    return await auctions.auction_stats(db, auction_id)


@app.get("/admin/auction-status-counts")
async def auction_status_counts(
    current_user: User = Depends(admin_only),
    db: AsyncSession = Depends(get_db)
):
    return await lifecycle.auction_status_counts(db)


@app.post("/admin/auctions/sweep")
async def run_status_sweep(
    current_user: User = Depends(admin_only),
    session_factory=Depends(get_session_factory)
):
    return await lifecycle.update_auction_statuses(session_factory)


@app.websocket("/ws/{auction_id}")
async def ws(websocket: WebSocket, auction_id: int):
    await auction_ws(websocket, auction_id)
