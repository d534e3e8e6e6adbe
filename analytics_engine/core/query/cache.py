import hashlib
import json
import logging
from typing import Any, Dict, Optional, Protocol

from pydantic import ValidationError as SchemaError
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from analytics_engine.core.config import settings
from analytics_engine.core.errors import CacheError
from analytics_engine.core.schemas import (
    ColumnMappings,
    DataSourceConfig,
    QueryParams,
    QueryResult,
    SecurityContext,
)


# -----------------------------------------------------------------------------
# CACHE MODULE
# Purpose: results (short TTL) and schema metadata (long TTL) in Redis.
# The store is optional: a failed read is a miss, a failed write is logged.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

KEY_PREFIX = "analytics"


class CacheStore(Protocol):
    """Key-value boundary. The engine owns the keys, the store owns storage."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: int) -> None: ...

    async def delete(self, key: str) -> int: ...

    async def delete_matching(self, prefix: str) -> int: ...


class RedisCacheStore:
    """CacheStore on the redis asyncio client. Every Redis failure becomes CacheError."""

    def __init__(self, client: aioredis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, redis_url: Optional[str] = None) -> "RedisCacheStore":
        client = aioredis.from_url(
            redis_url or settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return cls(client)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._redis.get(key)
        except (RedisError, OSError) as error:
            raise CacheError(f"get failed: {error}") from error

    async def set(self, key: str, value: str, ttl: int) -> None:
        try:
            await self._redis.set(key, value, ex=ttl)
        except (RedisError, OSError) as error:
            raise CacheError(f"set failed: {error}") from error

    async def delete(self, key: str) -> int:
        try:
            return await self._redis.delete(key)
        except (RedisError, OSError) as error:
            raise CacheError(f"delete failed: {error}") from error

    async def delete_matching(self, prefix: str) -> int:
        """SCAN + DEL in batches, KEYS would block the server."""
        deleted = 0
        batch = []
        try:
            async for key in self._redis.scan_iter(match=f"{prefix}*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await self._redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._redis.delete(*batch)
        except (RedisError, OSError) as error:
            raise CacheError(f"delete_matching failed: {error}") from error
        return deleted

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError):
            return False

    async def close(self):
        await self._redis.aclose()


# =========================
# KEYS
# =========================
def result_key_prefix(data_source_id: int) -> str:
    return f"{KEY_PREFIX}:result:ds:{data_source_id}:"


def column_mappings_key(table: str, schema: str) -> str:
    return f"{KEY_PREFIX}:columns:{schema}.{table}"


def data_source_config_key(data_source_id: int) -> str:
    return f"{KEY_PREFIX}:datasource:{data_source_id}"


def security_fingerprint(context: SecurityContext) -> Dict[str, Any]:
    return {
        "tenant_ids": sorted(context.accessible_tenant_ids),
        "sub_entity_ids": sorted(context.accessible_sub_entity_ids),
        "permission_scope": context.permission_scope.value,
    }


def build_result_cache_key(params: QueryParams, context: SecurityContext) -> str:
    """
    Deterministic key over the query and the security context.

    Two requests with the same params and different access lists always get
    different keys, so a result computed for one context is never served to
    another.
    """
    payload = {
        "params": params.model_dump(mode="json", exclude={"nocache"}),
        "security": security_fingerprint(context),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{result_key_prefix(params.data_source_id)}{digest}"


# =========================
# CACHE SERVICE
# =========================
class AnalyticsCache:
    """
    Result and metadata cache for the query engine.

    Args:
        store: Any CacheStore, Redis in production.
        result_ttl: Seconds a query result stays valid.
        mapping_ttl: Seconds column mappings stay valid.
        config_ttl: Seconds a data source config stays valid.
    """

    def __init__(
        self,
        store: CacheStore,
        result_ttl: int = settings.RESULT_CACHE_TTL_SECONDS,
        mapping_ttl: int = settings.COLUMN_MAPPING_TTL_SECONDS,
        config_ttl: int = settings.DATA_SOURCE_CONFIG_TTL_SECONDS,
    ):
        self.store = store
        self.result_ttl = result_ttl
        self.mapping_ttl = mapping_ttl
        self.config_ttl = config_ttl
        self.stats = {"hits": 0, "misses": 0, "errors": 0}

    async def _read(self, key: str) -> Optional[str]:
        try:
            raw = await self.store.get(key)
        except CacheError as error:
            self.stats["errors"] += 1
            logger.warning(f"[Cache] Read degraded to miss: {error}")
            return None

        if raw is None:
            self.stats["misses"] += 1
        else:
            self.stats["hits"] += 1
        return raw

    async def _write(self, key: str, value: str, ttl: int) -> bool:
        try:
            await self.store.set(key, value, ttl)
            return True
        except CacheError as error:
            self.stats["errors"] += 1
            logger.warning(f"[Cache] Write skipped: {error}")
            return False

    async def _delete(self, key: str) -> int:
        try:
            return await self.store.delete(key)
        except CacheError as error:
            self.stats["errors"] += 1
            logger.warning(f"[Cache] Delete skipped: {error}")
            return 0

    # Query results
    async def get_query_result(self, params: QueryParams, context: SecurityContext) -> Optional[QueryResult]:
        key = build_result_cache_key(params, context)
        raw = await self._read(key)
        if raw is None:
            return None
        try:
            return QueryResult.model_validate_json(raw)
        except SchemaError:
            logger.warning(f"[Cache] Dropping unreadable result entry {key[-16:]}")
            await self._delete(key)
            return None

    async def set_query_result(
        self,
        params: QueryParams,
        context: SecurityContext,
        result: QueryResult,
        ttl: Optional[int] = None,
    ) -> bool:
        key = build_result_cache_key(params, context)
        return await self._write(key, result.model_dump_json(), ttl if ttl is not None else self.result_ttl)

    # Column mappings
    async def get_column_mappings(self, table: str, schema: str) -> Optional[ColumnMappings]:
        raw = await self._read(column_mappings_key(table, schema))
        if raw is None:
            return None
        try:
            return ColumnMappings.model_validate_json(raw)
        except SchemaError:
            await self._delete(column_mappings_key(table, schema))
            return None

    async def set_column_mappings(self, table: str, schema: str, mappings: ColumnMappings) -> bool:
        return await self._write(column_mappings_key(table, schema), mappings.model_dump_json(), self.mapping_ttl)

    async def invalidate_column_mappings(self, table: str, schema: str) -> None:
        await self._delete(column_mappings_key(table, schema))
        logger.info(f"[Cache] Column mappings invalidated for {schema}.{table}")

    # Data source configs
    async def get_data_source_config(self, data_source_id: int) -> Optional[DataSourceConfig]:
        raw = await self._read(data_source_config_key(data_source_id))
        if raw is None:
            return None
        try:
            return DataSourceConfig.model_validate_json(raw)
        except SchemaError:
            await self._delete(data_source_config_key(data_source_id))
            return None

    async def set_data_source_config(self, config: DataSourceConfig) -> bool:
        return await self._write(
            data_source_config_key(config.data_source_id), config.model_dump_json(), self.config_ttl
        )

    async def invalidate_data_source_config(self, data_source_id: int) -> None:
        await self._delete(data_source_config_key(data_source_id))

    async def invalidate_data_source(self, data_source_id: int) -> int:
        """Drop every cached result for a data source. Returns the number deleted."""
        try:
            deleted = await self.store.delete_matching(result_key_prefix(data_source_id))
        except CacheError as error:
            self.stats["errors"] += 1
            logger.warning(f"[Cache] Result invalidation skipped for data source {data_source_id}: {error}")
            return 0

        logger.info(f"[Cache] Invalidated {deleted} cached result(s) for data source {data_source_id}")
        return deleted
