import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from analytics_engine.core.errors import (
    AnalyticsError,
    DataSourceNotFound,
    QueryValidationError,
    ValidationError,
)
from analytics_engine.core.query import validator
from analytics_engine.core.query.builder import build_filter_list
from analytics_engine.core.query.config_provider import DataSourceConfigProvider
from analytics_engine.core.query.executor import QueryExecutor
from analytics_engine.core.query.sanitizer import sanitize_filters
from analytics_engine.core.schemas import (
    DataSourceConfig,
    QueryParams,
    QueryResult,
    SecurityContext,
)


# -----------------------------------------------------------------------------
# ORCHESTRATOR MODULE
# Purpose: public entry point. Validate, resolve config, build and sanitize
# filters, then hand off to exactly one execution strategy.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)


class QueryStage(Enum):
    """Stages one query passes through, in order."""

    VALIDATE = "validate"
    RESOLVE_CONFIG = "resolve_config"
    BUILD_FILTERS = "build_filters"
    SANITIZE = "sanitize"
    ROUTE = "route"


class QueryStrategy(Enum):
    """Closed set of execution strategies."""

    SIMPLE = "simple"
    MULTIPLE_SERIES = "multiple_series"
    PERIOD_COMPARISON = "period_comparison"


class QueryLogger:
    """Stage log for one query. Records names and timings, never filter values."""

    def __init__(self, data_source_id: int, user_id: Optional[int] = None):
        self.data_source_id = data_source_id
        self.user_id = user_id
        self.start_time = datetime.now()
        self.logs: List[Dict[str, Any]] = []

    def log(self, stage: QueryStage, message: str, level: str = "info"):
        self.logs.append(
            {
                "stage": stage.value,
                "message": message,
                "level": level,
                "elapsed_seconds": (datetime.now() - self.start_time).total_seconds(),
            }
        )

        line = f"[DataSource {self.data_source_id} User {self.user_id}] {stage.value}: {message}"
        if level == "error":
            logger.error(line)
        elif level == "warning":
            logger.warning(line)
        else:
            logger.debug(line)

    def get_summary(self) -> Dict[str, Any]:
        return {
            "data_source_id": self.data_source_id,
            "user_id": self.user_id,
            "duration_seconds": (datetime.now() - self.start_time).total_seconds(),
            "stages": [entry["stage"] for entry in self.logs],
        }


def choose_strategy(params: QueryParams) -> QueryStrategy:
    """Multiple series wins over period comparison, anything else is simple."""
    if params.multiple_series:
        return QueryStrategy.MULTIPLE_SERIES
    if params.period_comparison is not None and params.period_comparison.enabled:
        return QueryStrategy.PERIOD_COMPARISON
    return QueryStrategy.SIMPLE


class QueryOrchestrator:
    """
    Entry point for analytics queries.

    Args:
        config_provider: Resolves data_source_id to its DataSourceConfig.
        executor: Runs the chosen strategy.
    """

    def __init__(self, config_provider: DataSourceConfigProvider, executor: QueryExecutor):
        self.config_provider = config_provider
        self.executor = executor

    async def resolve_config(self, data_source_id: int) -> DataSourceConfig:
        config = await self.config_provider.get_data_source_config(data_source_id)
        if config is None or not config.is_active:
            raise DataSourceNotFound("unknown data source", field="data_source_id")
        return config

    async def query(self, params: QueryParams, context: SecurityContext) -> QueryResult:
        """
        Run one analytics request.

        Args:
            params: The request.
            context: Resolved row-level access for the caller.

        Returns:
            QueryResult from the selected strategy.

        Raises:
            ValidationError family for bad requests, ExecutionError family
            when the database fails.
        """
        query_logger = QueryLogger(params.data_source_id, context.user_id)
        stage = QueryStage.RESOLVE_CONFIG

        try:
            query_logger.log(stage, "Resolving data source config")
            config = await self.resolve_config(params.data_source_id)
            validator.validate_table(config.table_name, config.schema_name, config)

            stage = QueryStage.VALIDATE
            query_logger.log(stage, f"Validating {len(params.filters)} filter(s)")
            validation = validator.validate_params(params, config)
            if not validation.is_valid:
                raise QueryValidationError(validation.errors)

            stage = QueryStage.BUILD_FILTERS
            query_logger.log(stage, "Building filter list")
            mappings = await self.executor.get_column_mappings(config)
            filters = build_filter_list(params, mappings, config)

            # Fail fast on bad values before any strategy runs
            stage = QueryStage.SANITIZE
            query_logger.log(stage, f"Sanitizing {len(filters)} filter(s)")
            clean_filters = sanitize_filters(filters)
            # User filters sit at the end of the built list
            user_filters = clean_filters[len(clean_filters) - len(params.filters):]
            sanitized = params.model_copy(update={"filters": user_filters})

            stage = QueryStage.ROUTE
            strategy = choose_strategy(sanitized)
            query_logger.log(stage, f"Routing to {strategy.value}")

            if strategy is QueryStrategy.MULTIPLE_SERIES:
                result = await self.executor.execute_multiple_series(sanitized, context, config)
            elif strategy is QueryStrategy.PERIOD_COMPARISON:
                result = await self.executor.execute_period_comparison(sanitized, context, config)
            else:
                result = await self.executor.execute_core(sanitized, context, config)

        except AnalyticsError as error:
            # Field names and reasons only, raw values stay out of the logs
            level = "warning" if isinstance(error, ValidationError) else "error"
            query_logger.log(stage, f"{type(error).__name__}: {error.message} (field={error.field})", level)
            raise

        logger.info(
            f"Analytics query done: data source {params.data_source_id}, strategy {strategy.value}, "
            f"{result.row_count} row(s), cache_hit={result.cache_hit}, {result.query_time_ms}ms"
        )
        return result

    async def invalidate_data_source(self, data_source_id: int) -> int:
        """
        Drop cached results, column mappings and the config for a data source
        together. Called by anything that changes the table's data or schema.

        Returns:
            Number of cached results removed.
        """
        config = await self.config_provider.get_data_source_config(data_source_id)
        cache = self.executor.cache

        jobs = [cache.invalidate_data_source(data_source_id), self.config_provider.invalidate(data_source_id)]
        if config is not None:
            jobs.append(cache.invalidate_column_mappings(config.table_name, config.schema_name))

        deleted, *_ = await asyncio.gather(*jobs)
        logger.info(f"Data source {data_source_id} invalidated ({deleted} cached result(s))")
        return deleted
