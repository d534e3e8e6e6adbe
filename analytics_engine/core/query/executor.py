import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set, Tuple
from uuid import UUID

from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from analytics_engine.core.config import settings
from analytics_engine.core.errors import (
    AnalyticsError,
    ExecutionError,
    FatalExecutionError,
    PeriodComparisonError,
    TransientExecutionError,
    ValidationError,
)
from analytics_engine.core.query import builder
from analytics_engine.core.query.cache import AnalyticsCache
from analytics_engine.core.query.periods import calculate_comparison_range, comparison_label
from analytics_engine.core.query.sanitizer import sanitize_filters
from analytics_engine.core.schemas import (
    ChartFilter,
    ColumnMappings,
    DataSourceConfig,
    FilterOperator,
    QueryParams,
    QueryResult,
    SecurityContext,
)


# -----------------------------------------------------------------------------
# EXECUTOR MODULE
# Purpose: run built SQL against the analytics store with caching and retries.
# execute_core is the one leaf routine; the series and comparison strategies
# only transform params and call it.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

# Serialization failure, deadlock, too many connections, admin/crash shutdown
TRANSIENT_SQLSTATES = {"40001", "40P01", "53300", "57P01", "57P02", "57P03"}
# Connection exception class
TRANSIENT_SQLSTATE_CLASSES = ("08",)


class AnalyticsDatabaseProtocol(Protocol):
    async def fetch_all(self, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]: ...


@dataclass
class RetryPolicy:
    """Bounded retries with exponential backoff for transient failures."""

    max_retries: int = settings.QUERY_MAX_RETRIES
    initial_delay_seconds: float = settings.QUERY_RETRY_INITIAL_DELAY_SECONDS
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = settings.QUERY_RETRY_MAX_DELAY_SECONDS


def _sqlstate(error: BaseException) -> Optional[str]:
    orig = getattr(error, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def classify_db_error(error: BaseException) -> ExecutionError:
    """
    Sort a driver or SQLAlchemy error into transient (retry) or fatal.
    The message stays generic: driver errors can quote SQL and values.
    """
    if isinstance(error, ExecutionError):
        return error

    if isinstance(error, DBAPIError):
        code = _sqlstate(error)
        if error.connection_invalidated:
            return TransientExecutionError("database connection lost")
        if code and (code in TRANSIENT_SQLSTATES or code.startswith(TRANSIENT_SQLSTATE_CLASSES)):
            return TransientExecutionError(f"transient database error (sqlstate {code})")
        return FatalExecutionError(f"database error (sqlstate {code or 'unknown'})")

    if isinstance(error, (ConnectionError, TimeoutError)):
        return TransientExecutionError(f"database unreachable: {type(error).__name__}")

    if isinstance(error, OSError):
        return TransientExecutionError(f"database i/o error: {type(error).__name__}")

    return FatalExecutionError(f"database error: {type(error).__name__}")


def derive_column_mappings(config: DataSourceConfig) -> ColumnMappings:
    """
    Resolve which physical columns play the date, time bucket, value and
    value-type roles so query building stays table agnostic.
    """
    columns = config.columns

    time_period_column = next((col for col in columns if col.is_time_period), None)
    time_period_field = time_period_column.column_name if time_period_column else "frequency"

    # Date column must not be the time bucket; prefer the conventional names
    date_column = next(
        (
            col
            for col in columns
            if col.is_date_field
            and col.column_name != time_period_field
            and (col.column_name in ("date_value", "date_index") or col.data_type == "date")
        ),
        None,
    ) or next(
        (col for col in columns if col.is_date_field and col.column_name != time_period_field),
        None,
    )
    date_field = date_column.column_name if date_column else "date_index"

    measure_column = next((col for col in columns if col.is_measure), None)
    measure_value_field = measure_column.column_name if measure_column else "measure_value"

    measure_type_column = next((col for col in columns if col.is_measure_type), None)
    measure_type_field = measure_type_column.column_name if measure_type_column else "measure_type"

    return ColumnMappings(
        date_field=date_field,
        time_period_field=time_period_field,
        measure_value_field=measure_value_field,
        measure_type_field=measure_type_field,
        all_columns=[col.column_name for col in columns],
    )


def normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe values, so a cached row reads back exactly as it was served."""
    normalized = {}
    for key, value in row.items():
        if isinstance(value, Decimal):
            value = float(value)
        elif isinstance(value, (datetime, date)):
            value = value.isoformat()
        elif isinstance(value, UUID):
            value = str(value)
        normalized[key] = value
    return normalized


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class QueryExecutor:
    """
    Runs analytics queries.

    Args:
        database: The parameterized SQL boundary (fetch_all).
        cache: Result and metadata cache.
        retry_policy: Backoff settings for transient failures.
        comparison_timeout: Upper bound in seconds for the two concurrent
            period comparison queries together.
        default_limit: Row cap applied when the request sets none.
    """

    def __init__(
        self,
        database: AnalyticsDatabaseProtocol,
        cache: AnalyticsCache,
        retry_policy: Optional[RetryPolicy] = None,
        comparison_timeout: float = settings.QUERY_TIMEOUT_SECONDS,
        default_limit: int = settings.DEFAULT_ROW_LIMIT,
    ):
        self.database = database
        self.cache = cache
        self.retry_policy = retry_policy or RetryPolicy()
        self.comparison_timeout = comparison_timeout
        self.default_limit = default_limit
        self._pending_writes: Set[asyncio.Task] = set()

    # =========================
    # Metadata
    # =========================
    async def get_column_mappings(self, config: DataSourceConfig) -> ColumnMappings:
        cached = await self.cache.get_column_mappings(config.table_name, config.schema_name)
        if cached is not None:
            return cached

        mappings = derive_column_mappings(config)
        await self.cache.set_column_mappings(config.table_name, config.schema_name, mappings)
        return mappings

    # =========================
    # SQL execution
    # =========================
    async def run_with_retry(self, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        """
        Run one statement. Transient errors are retried with exponential
        backoff up to the policy bound, fatal ones propagate at once.
        """
        policy = self.retry_policy
        delay = policy.initial_delay_seconds

        for attempt in range(policy.max_retries + 1):
            try:
                return await self.database.fetch_all(sql, params)
            except (ExecutionError, SQLAlchemyError, OSError) as raw_error:
                error = classify_db_error(raw_error)

                if error.retryable and attempt < policy.max_retries:
                    logger.warning(
                        f"Analytics query failed (attempt {attempt + 1}/{policy.max_retries + 1}): "
                        f"{error.message}. Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * policy.backoff_multiplier, policy.max_delay_seconds)
                    continue

                logger.error(f"Analytics query failed after {attempt + 1} attempt(s): {error.message}")
                if error is raw_error:
                    raise
                raise error from raw_error

        # Unreachable, the loop always returns or raises
        raise FatalExecutionError("retry loop exhausted")

    def _schedule_cache_write(self, params: QueryParams, context: SecurityContext, result: QueryResult):
        task = asyncio.create_task(self.cache.set_query_result(params, context, result))
        self._pending_writes.add(task)
        task.add_done_callback(self._on_cache_write_done)

    def _on_cache_write_done(self, task: asyncio.Task):
        self._pending_writes.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"[Cache] Background result write failed: {type(task.exception()).__name__}")

    async def drain(self):
        """Wait for background cache writes, used on shutdown and in tests."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    # =========================
    # Core
    # =========================
    async def execute_core(
        self,
        params: QueryParams,
        context: SecurityContext,
        config: DataSourceConfig,
    ) -> QueryResult:
        """
        The single leaf execution routine.

        cache check -> column mappings -> filters -> sanitize -> SQL ->
        run with retry -> optional totals -> background cache write.
        Never calls back into the orchestrator.
        """
        start = time.perf_counter()

        if not params.nocache:
            cached = await self.cache.get_query_result(params, context)
            if cached is not None:
                logger.info(
                    f"Analytics query served from cache: data source {params.data_source_id}, "
                    f"{cached.row_count} row(s)"
                )
                return cached.model_copy(update={"cache_hit": True, "query_time_ms": _elapsed_ms(start)})

        mappings = await self.get_column_mappings(config)
        filters = sanitize_filters(builder.build_filter_list(params, mappings, config))

        counter = builder.ParamCounter()
        where = builder.build_where_clause(filters, context, config, counter)
        leading = [config.measure_field] if _has_measure_list(filters, config) else None
        order_by = builder.build_order_by(mappings, leading=leading)
        query = builder.build_select_query(
            config, mappings, where, order_by, params.limit or self.default_limit, counter
        )

        rows = [normalize_row(row) for row in await self.run_with_retry(query.sql, query.params)]

        total = None
        if params.include_totals:
            aggregation = builder.build_aggregation_query(config, mappings, where)
            total_rows = await self.run_with_retry(aggregation.sql, aggregation.params)
            total = sum(float(row["total"] or 0) for row in total_rows)

        result = QueryResult(
            rows=rows,
            row_count=len(rows),
            query_time_ms=_elapsed_ms(start),
            cache_hit=False,
            total=total,
        )

        logger.info(
            f"Analytics query completed: data source {params.data_source_id}, "
            f"{result.row_count} row(s), {len(filters)} filter(s), {result.query_time_ms}ms"
        )

        if not params.nocache:
            self._schedule_cache_write(params, context, result)

        return result

    # =========================
    # Multiple series
    # =========================
    async def execute_multiple_series(
        self,
        params: QueryParams,
        context: SecurityContext,
        config: DataSourceConfig,
    ) -> QueryResult:
        """
        All series in one statement: measure = ANY($n) instead of one query
        per series, then rows are tagged with their series in Python.
        """
        start = time.perf_counter()
        series_list = params.multiple_series or []
        if not series_list:
            raise ValidationError("multiple series configuration is required", field="multiple_series")

        measures = list(dict.fromkeys(series.measure for series in series_list))
        frequency = params.frequency or next((s.frequency for s in series_list if s.frequency), None)

        core_params = params.model_copy(
            update={
                "measure": None,
                "frequency": frequency,
                "multiple_series": None,
                "period_comparison": None,
                "filters": [
                    ChartFilter(field=config.measure_field, operator=FilterOperator.IN.value, value=measures),
                    *params.filters,
                ],
            }
        )

        logger.info(f"Building multiple series query: {len(series_list)} series, {len(measures)} measure(s)")
        result = await self.execute_core(core_params, context, config)

        series_by_measure: Dict[str, list] = {}
        for series in series_list:
            series_by_measure.setdefault(series.measure, []).append(series)

        tagged = []
        for row in result.rows:
            for series in series_by_measure.get(row.get(config.measure_field), []):
                item = {
                    **row,
                    "series_id": series.id,
                    "series_label": series.label or series.measure,
                    "series_aggregation": series.aggregation.value,
                }
                if series.color:
                    item["series_color"] = series.color
                tagged.append(item)

        return QueryResult(
            rows=tagged,
            row_count=len(tagged),
            query_time_ms=_elapsed_ms(start),
            cache_hit=result.cache_hit,
            total=result.total,
        )

    # =========================
    # Period comparison
    # =========================
    async def execute_period_comparison(
        self,
        params: QueryParams,
        context: SecurityContext,
        config: DataSourceConfig,
    ) -> QueryResult:
        """
        Run the current and the comparison window concurrently through
        execute_core and tag each row with the period it belongs to.
        """
        start = time.perf_counter()
        comparison = params.period_comparison
        if comparison is None or not comparison.enabled:
            raise ValidationError("period comparison configuration is required", field="period_comparison")

        if comparison.current_range is not None:
            current_start, current_end = comparison.current_range.start, comparison.current_range.end
        else:
            current_start, current_end = params.start_date, params.end_date

        if not params.frequency or current_start is None or current_end is None:
            raise ValidationError("frequency and a date range are required", field="period_comparison")

        comparison_range = calculate_comparison_range(current_start, current_end, params.frequency, comparison)

        # Fresh copies for each side, period_comparison stripped from both
        current_params = params.model_copy(
            update={"period_comparison": None, "start_date": current_start, "end_date": current_end}
        )
        comparison_params = current_params.model_copy(
            update={"start_date": comparison_range.start, "end_date": comparison_range.end}
        )

        logger.info(
            f"Building period comparison query: {comparison.comparison_type.value}, "
            f"current {current_start}..{current_end}, "
            f"comparison {comparison_range.start}..{comparison_range.end}"
        )

        current_result, comparison_result = await self._execute_pair(
            current_params, comparison_params, context, config
        )

        if current_result.row_count == 0:
            logger.warning(f"No data found for current period {current_start}..{current_end}")
        if comparison_result.row_count == 0:
            logger.warning(f"No data found for comparison period {comparison_range.start}..{comparison_range.end}")

        label = comparison_label(params.frequency, comparison)
        rows = [
            {**row, "comparison_period": "current", "comparison_label": "Current Period"}
            for row in current_result.rows
        ] + [
            {**row, "comparison_period": "comparison", "comparison_label": label}
            for row in comparison_result.rows
        ]

        total = None
        if params.include_totals:
            total = (current_result.total or 0) + (comparison_result.total or 0)

        return QueryResult(
            rows=rows,
            row_count=len(rows),
            query_time_ms=_elapsed_ms(start),
            cache_hit=current_result.cache_hit or comparison_result.cache_hit,
            total=total,
        )

    async def _execute_pair(
        self,
        first: QueryParams,
        second: QueryParams,
        context: SecurityContext,
        config: DataSourceConfig,
    ) -> Tuple[QueryResult, QueryResult]:
        """
        Fan out two execute_core calls and join them. If either fails or the
        pair times out, the sibling is cancelled and one error is raised.
        """
        tasks = [
            asyncio.create_task(self.execute_core(first, context, config)),
            asyncio.create_task(self.execute_core(second, context, config)),
        ]

        try:
            async with asyncio.timeout(self.comparison_timeout):
                current, previous = await asyncio.gather(*tasks)
            return current, previous
        except TimeoutError as error:
            raise PeriodComparisonError("period comparison timed out", cause=error) from error
        except ValidationError:
            raise
        except AnalyticsError as error:
            raise PeriodComparisonError(
                f"period comparison failed: {error.message}", cause=error
            ) from error
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)


def _has_measure_list(filters: List[ChartFilter], config: DataSourceConfig) -> bool:
    return any(
        flt.field == config.measure_field and flt.operator == FilterOperator.IN.value
        for flt in filters
    )
