from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from orchestrator.config.settings import Settings, get_settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class Database:
    """Database connection and session management."""

    def __init__(self, settings: Settings):
        self.settings = settings
        engine_options: dict = {"echo": False}
        if settings.is_sqlite:
            # Concurrent writers wait for the file lock instead of failing
            engine_options["connect_args"] = {"timeout": 30}
        else:
            engine_options.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                pool_recycle=settings.db_pool_recycle,
            )
        self.engine = create_async_engine(settings.database_url, **engine_options)
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_all(self) -> None:
        """Create all tables; migrations are preferred outside development."""
        # Import models so they are registered on the metadata
        from orchestrator.jobs import models  # noqa: F401
        from orchestrator.jobs import quota  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()


# Global database instance
_database: Database | None = None


def get_database(settings: Settings | None = None) -> Database:
    """Get or create the global database instance."""
    global _database
    if _database is None:
        _database = Database(settings or get_settings())
    return _database

