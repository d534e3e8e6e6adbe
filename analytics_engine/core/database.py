from typing import Any, Dict, List, Sequence

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from analytics_engine.core.config import settings

# Metadata store: data source definitions live here
engine = create_async_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO)

# Analytics store: the pre-aggregated tables the engine queries
warehouse_engine = create_async_engine(
    settings.ANALYTICS_DATABASE_URL, echo=settings.SQL_ECHO, pool_pre_ping=True
)

# Talk to the DB through async sessions without refreshes after closed conn to avoid errors in async programming
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


# All the models are "stored" in the Base class will be processed by the Engine
class Base(DeclarativeBase):
    pass


class AnalyticsDatabase:
    """
    Parameterized SQL boundary for the analytics store.

    Takes SQL text with $n placeholders and an ordered parameter list and
    hands both to the driver untouched. Values are never formatted into the
    statement.
    """

    def __init__(self, bind: AsyncEngine):
        self.bind = bind

    async def fetch_all(self, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        async with self.bind.connect() as conn:
            result = await conn.exec_driver_sql(sql, tuple(params))
            return [dict(row) for row in result.mappings().all()]

    async def dispose(self):
        await self.bind.dispose()
