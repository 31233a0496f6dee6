import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("AUCTION_SWEEP_ENABLED", "false")

import json
from datetime import timedelta
from decimal import Decimal
from functools import lru_cache

import httpx
import pytest
from sqlalchemy.future import select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

import main
import notifications
from auth import create_token, hash_password
from database import get_db
from models import Base, User, Vendor, Auction, Role, AuctionStatus, utcnow


class RecordingRedis:
    """Stands in for the redis client; keeps every published message."""

    def __init__(self):
        self.published = []
        self.fail_with = None

    async def publish(self, channel, message):
        if self.fail_with:
            raise self.fail_with
        self.published.append((channel, json.loads(message)))
        return 1

    def events(self, channel=None, event=None):
        return [
            payload for ch, payload in self.published
            if (channel is None or ch == channel) and (event is None or payload["event"] == event)
        ]


@lru_cache(maxsize=1)
def password_hash():
    return hash_password("secret")


@pytest.fixture
def redis_events(monkeypatch):
    fake = RecordingRedis()
    monkeypatch.setattr(notifications, "r", fake)
    return fake


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'auctions.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory, redis_events):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    main.app.dependency_overrides[get_db] = override_get_db
    main.app.dependency_overrides[main.get_session_factory] = lambda: session_factory

    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    main.app.dependency_overrides.clear()


async def make_user(db, email, role=Role.CUSTOMER, commission_rate=None):
    user = User(email=email, password=password_hash(), role=role.value)
    db.add(user)
    await db.flush()

    if role == Role.VENDOR:
        db.add(Vendor(user_id=user.id, shop_name=email.split("@")[0], commission_rate=commission_rate))

    await db.commit()
    return user


async def vendor_of(db, user):
    result = await db.execute(select(Vendor).where(Vendor.user_id == user.id))
    return result.scalar()


def auth_header(user):
    return {"Authorization": f"Bearer {create_token({'id': user.id, 'role': user.role})}"}


@pytest.fixture
async def seller(db):
    return await make_user(db, "seller@example.com", Role.VENDOR)


@pytest.fixture
async def alice(db):
    return await make_user(db, "alice@example.com")


@pytest.fixture
async def bob(db):
    return await make_user(db, "bob@example.com")


@pytest.fixture
async def carol(db):
    return await make_user(db, "carol@example.com")


@pytest.fixture
async def admin(db):
    return await make_user(db, "admin@example.com", Role.ADMIN)


@pytest.fixture
def make_auction(db, seller):
    async def factory(**overrides):
        vendor = await vendor_of(db, overrides.pop("owner", seller))
        now = utcnow()
        fields = dict(
            auctionable_type="book",
            auctionable_id=str(overrides.pop("item_id", "42")),
            item_title="First edition",
            vendor_id=vendor.id,
            starting_price=Decimal("10.00"),
            start_date=now - timedelta(hours=1),
            end_date=now + timedelta(days=1),
            status=AuctionStatus.ACTIVE.value,
        )
        fields.update(overrides)
        auction = Auction(**fields)
        db.add(auction)
        await db.commit()
        return auction

    return factory


async def fetch(session_factory, model, ident):
    """Load a row through a fresh session so nothing cached is returned."""
    async with session_factory() as session:
        return await session.get(model, ident)


async def fetch_all(session_factory, query):
    async with session_factory() as session:
        result = await session.execute(query)
        return result.scalars().all()
