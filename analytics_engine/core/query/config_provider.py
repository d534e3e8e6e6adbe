import logging
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from analytics_engine.core import models
from analytics_engine.core.query.cache import AnalyticsCache
from analytics_engine.core.schemas import DataSourceColumn, DataSourceConfig


# -----------------------------------------------------------------------------
# CONFIG PROVIDER MODULE
# Purpose: resolve data_source_id -> DataSourceConfig from the metadata store.
# Configs change rarely, so they sit in the long-TTL cache.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)


class DataSourceConfigProvider(Protocol):
    async def get_data_source_config(self, data_source_id: int) -> Optional[DataSourceConfig]: ...

    async def invalidate(self, data_source_id: int) -> None: ...


def config_from_model(data_source: models.ChartDataSource) -> DataSourceConfig:
    """Map ORM rows to the engine's config type, dropping inactive columns."""
    return DataSourceConfig(
        data_source_id=data_source.data_source_id,
        schema_name=data_source.schema_name,
        table_name=data_source.table_name,
        is_active=data_source.is_active,
        tenant_field=data_source.tenant_field,
        sub_entity_field=data_source.sub_entity_field,
        measure_field=data_source.measure_field,
        columns=[
            DataSourceColumn.model_validate(col)
            for col in data_source.columns
            if col.is_active
        ],
    )


class DatabaseConfigProvider:
    """
    Reads data source definitions through an async session factory and
    caches them.

    Args:
        session_factory: async_sessionmaker bound to the metadata store.
        cache: AnalyticsCache used for the long-TTL config entries.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], cache: AnalyticsCache):
        self.session_factory = session_factory
        self.cache = cache

    async def get_data_source_config(self, data_source_id: int) -> Optional[DataSourceConfig]:
        cached = await self.cache.get_data_source_config(data_source_id)
        if cached is not None:
            return cached

        stmt = (
            select(models.ChartDataSource)
            .options(selectinload(models.ChartDataSource.columns))
            .where(models.ChartDataSource.data_source_id == data_source_id)
        )

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            data_source = result.scalars().first()

        if data_source is None:
            logger.info(f"Data source {data_source_id} not found in metadata store")
            return None

        config = config_from_model(data_source)
        await self.cache.set_data_source_config(config)
        return config

    async def invalidate(self, data_source_id: int) -> None:
        await self.cache.invalidate_data_source_config(data_source_id)
