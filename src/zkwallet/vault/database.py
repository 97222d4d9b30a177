"""Vault database connection and session management."""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from zkwallet.config import get_settings
from zkwallet.vault.models import Base


def normalize_url(db_url: str) -> str:
    """Convert sqlite:/// to sqlite+aiosqlite:/// if needed."""
    if db_url.startswith("sqlite:///") and "aiosqlite" not in db_url:
        return db_url.replace("sqlite:///", "sqlite+aiosqlite:///")
    return db_url


def create_vault_engine(db_url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the vault database."""
    if db_url is None:
        db_url = get_settings().vault_database_url
    return create_async_engine(normalize_url(db_url), echo=echo, future=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to the engine."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_vault(engine: AsyncEngine) -> None:
    """Initialize the vault database by creating all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
