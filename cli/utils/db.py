"""Database access for CLI commands"""

import asyncio
from typing import Awaitable, Callable, TypeVar

from orchestrator.config.settings import get_settings
from orchestrator.infra.database import Database

T = TypeVar("T")


def run_with_database(fn: Callable[[Database], Awaitable[T]]) -> T:
    """Run ``fn`` against a fresh database connection, closing it afterwards."""

    async def runner() -> T:
        database = Database(get_settings())
        try:
            return await fn(database)
        finally:
            await database.close()

    return asyncio.run(runner())
