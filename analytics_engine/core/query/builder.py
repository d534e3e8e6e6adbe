from datetime import datetime, timezone
from typing import Any, List, NamedTuple, Optional

from analytics_engine.core.errors import SanitizationRejection, SecurityViolation
from analytics_engine.core.query import validator
from analytics_engine.core.schemas import (
    ChartFilter,
    ColumnMappings,
    DataSourceColumn,
    DataSourceConfig,
    FilterOperator,
    QueryParams,
    SecurityContext,
)


# -----------------------------------------------------------------------------
# BUILDER MODULE
# Purpose: assemble parameterized SQL fragments with $n placeholders.
# Only whitelisted identifiers are ever written into SQL text; every value
# travels in the params list.
# -----------------------------------------------------------------------------

# Matches no real tenant, keeps the predicate in place when access is empty
NO_ACCESS_SENTINEL = -1

# Measure types whose total is a sum of values rather than a row count
SUMMABLE_MEASURE_TYPES = ("currency", "quantity")

DATE_TYPES = {"date"}
TIMESTAMP_TYPES = {"timestamp", "timestamp without time zone", "datetime"}
TIMESTAMPTZ_TYPES = {"timestamptz", "timestamp with time zone"}
TEXT_TYPE_PREFIXES = ("text", "char", "varchar", "character", "string")

OPERATOR_SQL = {
    FilterOperator.EQ.value: "=",
    FilterOperator.NEQ.value: "!=",
    FilterOperator.GT.value: ">",
    FilterOperator.GTE.value: ">=",
    FilterOperator.LT.value: "<",
    FilterOperator.LTE.value: "<=",
    FilterOperator.LIKE.value: "ILIKE",
}


class SqlFragment(NamedTuple):
    sql: str
    params: List[Any]


class ParamCounter:
    """Single running $n index shared by every fragment of one statement."""

    def __init__(self, start: int = 1):
        self.value = start

    def next(self) -> str:
        placeholder = f"${self.value}"
        self.value += 1
        return placeholder


def _identifier(name: str) -> str:
    if not validator.is_identifier(name):
        raise SecurityViolation("malformed identifier", field=None)
    return name


def _table_ref(config: DataSourceConfig) -> str:
    return f"{_identifier(config.schema_name)}.{_identifier(config.table_name)}"


def _temporal_kind(column: Optional[DataSourceColumn]) -> Optional[str]:
    """date, timestamp or timestamptz for columns bound as temporal values, else None."""
    if column is None:
        return None

    column_type = (column.data_type or "").strip().lower()
    if column_type in TIMESTAMPTZ_TYPES:
        return "timestamptz"
    if column_type in TIMESTAMP_TYPES:
        return "timestamp"
    if column_type in DATE_TYPES:
        return "date"
    # Flagged date columns with an unusual type spelling still bind as dates
    if column.is_date_field and not column_type.startswith(TEXT_TYPE_PREFIXES):
        return "date"
    return None


def _coerce(value: Any, kind: Optional[str], field: str) -> Any:
    # asyncpg rejects str for date and timestamp parameters
    if kind is None or not isinstance(value, str):
        return value

    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise SanitizationRejection("invalid date value", field=field) from None

    if kind == "date":
        return parsed.date()
    if kind == "timestamptz" and parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_security_predicate(context: SecurityContext, config: DataSourceConfig, counter: ParamCounter) -> SqlFragment:
    """
    Row-level tenant isolation. Never omitted: an empty id list produces a
    predicate that can only be false.
    """
    conditions = []
    params: List[Any] = []
    tenant_field = _identifier(config.tenant_field)

    if context.accessible_tenant_ids:
        conditions.append(f"{tenant_field} = ANY({counter.next()})")
        params.append(sorted(context.accessible_tenant_ids))
    else:
        conditions.append(f"{tenant_field} = {counter.next()}")
        params.append(NO_ACCESS_SENTINEL)

    if context.accessible_sub_entity_ids:
        sub_field = _identifier(config.sub_entity_field)
        conditions.append(f"({sub_field} IS NULL OR {sub_field} = ANY({counter.next()}))")
        params.append(sorted(context.accessible_sub_entity_ids))

    return SqlFragment(" AND ".join(conditions), params)


def build_filter_predicate(flt: ChartFilter, config: DataSourceConfig, counter: ParamCounter) -> SqlFragment:
    """One user predicate. The field and operator are validated here again."""
    validator.validate_field(flt.field, config.table_name, config.schema_name, config)
    validator.validate_operator(flt.operator)

    column = next((col for col in config.columns if col.column_name == flt.field), None)
    kind = _temporal_kind(column)
    field = flt.field
    op = flt.operator

    if op == FilterOperator.IN.value:
        return SqlFragment(f"{field} = ANY({counter.next()})", [[_coerce(v, kind, flt.field) for v in flt.value]])

    if op == FilterOperator.NOT_IN.value:
        return SqlFragment(f"{field} <> ALL({counter.next()})", [[_coerce(v, kind, flt.field) for v in flt.value]])

    if op == FilterOperator.BETWEEN.value:
        low, high = flt.value
        return SqlFragment(
            f"{field} BETWEEN {counter.next()} AND {counter.next()}",
            [_coerce(low, kind, flt.field), _coerce(high, kind, flt.field)],
        )

    if flt.value is None and op == FilterOperator.EQ.value:
        return SqlFragment(f"{field} IS NULL", [])

    if flt.value is None and op == FilterOperator.NEQ.value:
        return SqlFragment(f"{field} IS NOT NULL", [])

    return SqlFragment(f"{field} {OPERATOR_SQL[op]} {counter.next()}", [_coerce(flt.value, kind, flt.field)])


def build_where_clause(
    filters: List[ChartFilter],
    context: SecurityContext,
    table_config: DataSourceConfig,
    counter: Optional[ParamCounter] = None,
) -> SqlFragment:
    """
    Build the WHERE clause: security predicate first, then user filters,
    all numbered by one counter.

    Example:
        tenants [100, 101], measure AR, frequency Monthly gives
        "WHERE tenant_id = ANY($1) AND measure = $2 AND frequency = $3"
        with params [[100, 101], "AR", "Monthly"]
    """
    counter = counter or ParamCounter()

    security = build_security_predicate(context, table_config, counter)
    conditions = [security.sql]
    params = list(security.params)

    for flt in filters:
        fragment = build_filter_predicate(flt, table_config, counter)
        conditions.append(fragment.sql)
        params.extend(fragment.params)

    return SqlFragment(f"WHERE {' AND '.join(conditions)}", params)


def build_filter_list(params: QueryParams, mappings: ColumnMappings, config: DataSourceConfig) -> List[ChartFilter]:
    """Turn the request's top-level fields into filters, then append the user's own."""
    filters: List[ChartFilter] = []

    if params.measure:
        filters.append(ChartFilter(field=config.measure_field, operator="eq", value=params.measure))

    if params.frequency:
        filters.append(ChartFilter(field=mappings.time_period_field, operator="eq", value=params.frequency))

    if params.start_date:
        filters.append(ChartFilter(field=mappings.date_field, operator="gte", value=params.start_date.isoformat()))

    if params.end_date:
        filters.append(ChartFilter(field=mappings.date_field, operator="lte", value=params.end_date.isoformat()))

    filters.extend(params.filters)
    return filters


def build_select_columns(mappings: ColumnMappings) -> SqlFragment:
    return SqlFragment(", ".join(_identifier(col) for col in mappings.all_columns), [])


def build_order_by(mappings: ColumnMappings, leading: Optional[List[str]] = None) -> SqlFragment:
    columns = [_identifier(col) for col in (leading or [])]
    columns.append(f"{_identifier(mappings.date_field)} ASC")
    return SqlFragment(f"ORDER BY {', '.join(columns)}", [])


def build_select_query(
    config: DataSourceConfig,
    mappings: ColumnMappings,
    where: SqlFragment,
    order_by: SqlFragment,
    limit: Optional[int],
    counter: ParamCounter,
) -> SqlFragment:
    """Full row query. LIMIT continues numbering after the WHERE params."""
    columns = build_select_columns(mappings)
    sql = f"SELECT {columns.sql} FROM {_table_ref(config)} {where.sql} {order_by.sql}"
    params = list(where.params)

    if limit is not None:
        sql = f"{sql} LIMIT {counter.next()}"
        params.append(limit)

    return SqlFragment(sql, params)


def build_aggregation_query(config: DataSourceConfig, mappings: ColumnMappings, where: SqlFragment) -> SqlFragment:
    """
    Scalar total over the same WHERE clause: currency and quantity
    measures sum their values, everything else counts rows.
    """
    type_field = _identifier(mappings.measure_type_field)
    value_field = _identifier(mappings.measure_value_field)
    summable = ", ".join(f"'{t}'" for t in SUMMABLE_MEASURE_TYPES)

    sql = (
        f"SELECT CASE WHEN {type_field} IN ({summable}) "
        f"THEN SUM({value_field})::float8 ELSE COUNT(*)::float8 END AS total, "
        f"{type_field} AS measure_type "
        f"FROM {_table_ref(config)} {where.sql} "
        f"GROUP BY {type_field}"
    )
    return SqlFragment(sql, list(where.params))
