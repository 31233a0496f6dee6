from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

import config

engine = create_async_engine(config.DATABASE_URL, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
