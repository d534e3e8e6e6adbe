import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from analytics_engine.api.router import api_router
from analytics_engine.core.database import (
    AnalyticsDatabase,
    AsyncSessionLocal,
    engine,
    warehouse_engine,
)
from analytics_engine.core.query.cache import AnalyticsCache, RedisCacheStore
from analytics_engine.core.query.config_provider import DatabaseConfigProvider
from analytics_engine.core.query.executor import QueryExecutor
from analytics_engine.core.query.orchestrator import QueryOrchestrator

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_orchestrator(cache_store, database: AnalyticsDatabase) -> QueryOrchestrator:
    cache = AnalyticsCache(cache_store)
    config_provider = DatabaseConfigProvider(AsyncSessionLocal, cache)
    executor = QueryExecutor(database, cache)
    return QueryOrchestrator(config_provider, executor)


# Wire the shared pool and cache client once, close them on shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    cache_store = RedisCacheStore.from_url()
    if not await cache_store.ping():
        logger.warning("Redis unreachable at startup, queries will run uncached")

    database = AnalyticsDatabase(warehouse_engine)
    app.state.cache_store = cache_store
    app.state.orchestrator = build_orchestrator(cache_store, database)

    yield

    await app.state.orchestrator.executor.drain()
    await cache_store.close()
    await database.dispose()
    await engine.dispose()


app = FastAPI(title="Analytics Query Engine", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Analytics Query Engine"}
