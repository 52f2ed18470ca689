import re
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine
from sqlalchemy.orm import declarative_base
from sqlalchemy.ext.asyncio import async_sessionmaker
from portal.config import settings


def normalize_database_url(url: str) -> str:
    """Rewrite a plain postgres URL so it is served by the asyncpg driver."""
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    # asyncpg does not understand libpq's sslmode parameter
    return re.sub(r'[?&]sslmode=[^&]*', '', url)


def build_engine(url: str, ssl: bool = False) -> AsyncEngine:
    connect_args = {"ssl": True} if ssl and url.startswith("postgresql+asyncpg") else {}
    return create_async_engine(
        url,
        echo=False,
        future=True,
        connect_args=connect_args,
    )


# Create async SQLAlchemy engine
engine = build_engine(normalize_database_url(settings.DATABASE_URL), settings.DATABASE_SSL)

# Create base class for models
Base = declarative_base()

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    expire_on_commit=False,
    class_=AsyncSession,
)
