"""Database connection and session management."""

from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from product_sense.config import settings
from product_sense.errors import ConflictError, PersistenceError
from product_sense.models import Base

engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db() -> None:
    """Initialize database tables."""
    async with engine.begin() as conn:
        # Enable pgvector extension (required for VECTOR columns)
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate driver failures during a read into PersistenceError."""
    try:
        yield
    except (SQLAlchemyError, OSError) as e:
        msg = f"{operation} failed: {e}"
        raise PersistenceError(msg) from e


@asynccontextmanager
async def savepoint(session: AsyncSession, operation: str) -> AsyncIterator[None]:
    """Run a write inside a SAVEPOINT so a failure leaves the outer transaction usable.

    Raises:
        ConflictError: On a unique or foreign-key violation.
        PersistenceError: On any other database failure.
    """
    try:
        async with session.begin_nested():
            yield
    except IntegrityError as e:
        msg = f"{operation} conflicted: {e.orig}"
        raise ConflictError(msg) from e
    except (SQLAlchemyError, OSError) as e:
        msg = f"{operation} failed: {e}"
        raise PersistenceError(msg) from e
