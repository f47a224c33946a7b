from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from billing_webhooks.core.config import settings
from billing_webhooks.db.base import Base
import billing_webhooks.db.models  # noqa: F401  registers tables on Base.metadata

engine = create_async_engine(
    url=settings.DATABASE_URL,
    echo=settings.DATABASE_ECHO,
    future=True,
    pool_pre_ping=True,
)


# one session per webhook delivery, opened by the processor
async_session_factory = async_sessionmaker(
    bind=engine,
    autoflush=False,
    expire_on_commit=False
)


async def init_db():
    """
    Create all tables based on models.
    Only used in development; production schemas are migrated separately.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
