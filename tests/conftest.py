import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import fakeredis
import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from analytics_engine.core.config import settings
from analytics_engine.core.query.cache import AnalyticsCache, RedisCacheStore
from analytics_engine.core.query.executor import QueryExecutor, RetryPolicy
from analytics_engine.core.query.orchestrator import QueryOrchestrator
from analytics_engine.core.schemas import (
    DataSourceColumn,
    DataSourceConfig,
    PermissionScope,
    SecurityContext,
)
from analytics_engine.main import app


# Rows of the fake analytics table
TABLE_ROWS = [
    {"practice_uid": 100, "provider_uid": 1, "measure": "AR", "frequency": "Monthly",
     "date_index": "2024-01-31", "measure_value": 10.0, "measure_type": "currency"},
    {"practice_uid": 100, "provider_uid": 1, "measure": "AR", "frequency": "Monthly",
     "date_index": "2024-02-29", "measure_value": 20.0, "measure_type": "currency"},
    {"practice_uid": 101, "provider_uid": 2, "measure": "Charges", "frequency": "Monthly",
     "date_index": "2024-01-31", "measure_value": 5.0, "measure_type": "currency"},
    {"practice_uid": 200, "provider_uid": 3, "measure": "AR", "frequency": "Monthly",
     "date_index": "2024-01-31", "measure_value": 99.0, "measure_type": "currency"},
]


class FakeAnalyticsDatabase:
    """
    Records every statement and answers from TABLE_ROWS.
    Only the tenant predicate ($1) is evaluated, which is all the isolation
    tests need.
    """

    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None, delay: float = 0.0):
        self.rows = rows if rows is not None else list(TABLE_ROWS)
        self.delay = delay
        self.statements: List[tuple] = []
        self.failures: List[BaseException] = []

    async def fetch_all(self, sql: str, params):
        self.statements.append((sql, list(params)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)

        tenant_param = params[0]
        if isinstance(tenant_param, list):
            rows = [row for row in self.rows if row["practice_uid"] in tenant_param]
        else:
            rows = [row for row in self.rows if row["practice_uid"] == tenant_param]

        if sql.startswith("SELECT CASE"):
            return [{"total": sum(row["measure_value"] for row in rows), "measure_type": "currency"}] if rows else []
        return [dict(row) for row in rows]

    @property
    def select_statements(self):
        return [sql for sql, _ in self.statements if not sql.startswith("SELECT CASE")]


class BrokenRedis:
    """Redis client stand-in whose every call fails like an unreachable server."""

    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def set(self, key, value, ex=None):
        raise RedisConnectionError("connection refused")

    async def delete(self, *keys):
        raise RedisConnectionError("connection refused")

    async def scan_iter(self, match=None, count=None):
        raise RedisConnectionError("connection refused")
        yield  # makes this an async generator

    async def ping(self):
        raise RedisConnectionError("connection refused")


class StubConfigProvider:
    def __init__(self, configs: Dict[int, DataSourceConfig]):
        self.configs = configs
        self.invalidated: List[int] = []

    async def get_data_source_config(self, data_source_id: int):
        return self.configs.get(data_source_id)

    async def invalidate(self, data_source_id: int):
        self.invalidated.append(data_source_id)


def make_config(**overrides) -> DataSourceConfig:
    columns = [
        DataSourceColumn(column_name="practice_uid", data_type="integer"),
        DataSourceColumn(column_name="provider_uid", data_type="integer"),
        DataSourceColumn(column_name="measure", data_type="text"),
        DataSourceColumn(column_name="frequency", data_type="text", is_time_period=True),
        DataSourceColumn(column_name="date_index", data_type="date", is_date_field=True),
        DataSourceColumn(column_name="measure_value", data_type="numeric", is_measure=True, is_filterable=False),
        DataSourceColumn(column_name="measure_type", data_type="text", is_measure_type=True),
        DataSourceColumn(column_name="entity_name", data_type="text", allowed_operators=["eq", "in", "like"]),
    ]
    values = {
        "data_source_id": 1,
        "schema_name": "ih",
        "table_name": "agg_app_measures",
        "columns": columns,
    }
    values.update(overrides)
    return DataSourceConfig(**values)


@pytest.fixture
def data_source_config():
    return make_config()


@pytest.fixture
def tenant_context():
    return SecurityContext(
        user_id=7,
        accessible_tenant_ids=frozenset({100, 101}),
        permission_scope=PermissionScope.ORGANIZATION,
    )


@pytest.fixture
def other_tenant_context():
    return SecurityContext(
        user_id=8,
        accessible_tenant_ids=frozenset({200}),
        permission_scope=PermissionScope.ORGANIZATION,
    )


@pytest.fixture
def no_access_context():
    return SecurityContext(user_id=9, accessible_tenant_ids=frozenset())


@pytest.fixture
def fake_redis():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def cache_store(fake_redis):
    return RedisCacheStore(fake_redis)


@pytest.fixture
def cache(cache_store):
    return AnalyticsCache(cache_store, result_ttl=300, mapping_ttl=3600, config_ttl=3600)


@pytest.fixture
def broken_cache():
    return AnalyticsCache(RedisCacheStore(BrokenRedis()))


@pytest.fixture
def fake_db():
    return FakeAnalyticsDatabase()


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_retries=2, initial_delay_seconds=0.001, max_delay_seconds=0.005)


@pytest_asyncio.fixture
async def executor(fake_db, cache, retry_policy):
    executor = QueryExecutor(fake_db, cache, retry_policy=retry_policy, comparison_timeout=5)
    yield executor
    await executor.drain()


@pytest.fixture
def config_provider(data_source_config):
    return StubConfigProvider({data_source_config.data_source_id: data_source_config})


@pytest.fixture
def orchestrator(config_provider, executor):
    return QueryOrchestrator(config_provider, executor)


# Client
@pytest_asyncio.fixture(scope="function")
async def client(orchestrator, cache_store):
    app.state.orchestrator = orchestrator
    app.state.cache_store = cache_store

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac


# Tokens come from the authorization service in production
def create_access_token(data: Dict[str, Any], expires_minutes: int = 30) -> str:
    to_encode = data.copy()
    to_encode.update({"exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


# Token for a tenant user
@pytest.fixture
def auth_headers_user():
    token = create_access_token(
        {"user_id": 7, "tenant_ids": [100, 101], "permission_scope": "organization"}
    )
    return {"Authorization": f"Bearer {token}"}


# Token for an admin
@pytest.fixture
def auth_headers_admin():
    token = create_access_token(
        {"user_id": 1, "tenant_ids": [100, 101, 200], "permission_scope": "all"}
    )
    return {"Authorization": f"Bearer {token}"}
