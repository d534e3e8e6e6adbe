from datetime import date, datetime, timezone

import pytest

from analytics_engine.core.errors import SanitizationRejection, SecurityViolation
from analytics_engine.core.query import builder
from analytics_engine.core.query.executor import QueryExecutor, derive_column_mappings
from analytics_engine.core.schemas import (
    ChartFilter,
    PermissionScope,
    QueryParams,
    SecurityContext,
)

from conftest import make_config


@pytest.fixture
def tenant_id_config():
    config = make_config()
    columns = [
        col.model_copy(update={"column_name": "tenant_id"}) if col.column_name == "practice_uid" else col
        for col in config.columns
    ]
    return config.model_copy(update={"tenant_field": "tenant_id", "columns": columns})


def test_where_clause_example(tenant_id_config):
    context = SecurityContext(accessible_tenant_ids=frozenset({101, 100}))
    filters = [
        ChartFilter(field="measure", operator="eq", value="AR"),
        ChartFilter(field="frequency", operator="eq", value="Monthly"),
    ]

    clause, params = builder.build_where_clause(filters, context, tenant_id_config)

    assert clause == "WHERE tenant_id = ANY($1) AND measure = $2 AND frequency = $3"
    assert params == [[100, 101], "AR", "Monthly"]


def test_empty_tenant_access_is_structurally_false(tenant_id_config):
    context = SecurityContext(accessible_tenant_ids=frozenset(), permission_scope=PermissionScope.ALL)

    clause, params = builder.build_where_clause([], context, tenant_id_config)

    assert clause == "WHERE tenant_id = $1"
    assert params == [builder.NO_ACCESS_SENTINEL]


def test_sub_entity_predicate_shares_the_counter(data_source_config):
    context = SecurityContext(
        accessible_tenant_ids=frozenset({100}),
        accessible_sub_entity_ids=frozenset({2, 1}),
    )
    filters = [
        ChartFilter(field="entity_name", operator="in", value=["A", "B"]),
        ChartFilter(field="date_index", operator="between", value=["2024-01-01", "2024-03-31"]),
        ChartFilter(field="measure", operator="neq", value="AR"),
    ]

    clause, params = builder.build_where_clause(filters, context, data_source_config)

    assert clause == (
        "WHERE practice_uid = ANY($1)"
        " AND (provider_uid IS NULL OR provider_uid = ANY($2))"
        " AND entity_name = ANY($3)"
        " AND date_index BETWEEN $4 AND $5"
        " AND measure != $6"
    )
    assert params == [[100], [1, 2], ["A", "B"], date(2024, 1, 1), date(2024, 3, 31), "AR"]


def test_operator_rendering(data_source_config):
    context = SecurityContext(accessible_tenant_ids=frozenset({1}))
    filters = [
        ChartFilter(field="entity_name", operator="not_in", value=["X"]),
        ChartFilter(field="entity_name", operator="like", value="%clinic%"),
        ChartFilter(field="provider_uid", operator="gte", value=3),
        ChartFilter(field="provider_uid", operator="eq", value=None),
    ]

    clause, params = builder.build_where_clause(filters, context, data_source_config)

    assert "entity_name <> ALL($2)" in clause
    assert "entity_name ILIKE $3" in clause
    assert "provider_uid >= $4" in clause
    assert clause.endswith("provider_uid IS NULL")
    assert params == [[1], ["X"], "%clinic%", 3]


def test_injection_payload_stays_a_bound_parameter(data_source_config):
    payload = "x'); DROP TABLE t; --"
    context = SecurityContext(accessible_tenant_ids=frozenset({1}))
    clause, params = builder.build_where_clause(
        [ChartFilter(field="entity_name", operator="eq", value=payload)], context, data_source_config
    )

    assert payload not in clause
    assert "DROP" not in clause
    assert params[-1] == payload


def test_unknown_field_fails_closed(data_source_config):
    context = SecurityContext(accessible_tenant_ids=frozenset({1}))
    with pytest.raises(SecurityViolation):
        builder.build_where_clause(
            [ChartFilter(field="secret_column", operator="eq", value=1)], context, data_source_config
        )


def test_filter_list_from_params(data_source_config):
    mappings = derive_column_mappings(data_source_config)
    params = QueryParams(
        data_source_id=1,
        measure="AR",
        frequency="Monthly",
        start_date="2024-01-01",
        end_date="2024-06-30",
        filters=[ChartFilter(field="entity_name", operator="eq", value="A")],
    )

    filters = builder.build_filter_list(params, mappings, data_source_config)

    assert [(f.field, f.operator, f.value) for f in filters] == [
        ("measure", "eq", "AR"),
        ("frequency", "eq", "Monthly"),
        ("date_index", "gte", "2024-01-01"),
        ("date_index", "lte", "2024-06-30"),
        ("entity_name", "eq", "A"),
    ]


def test_select_query_continues_numbering_for_limit(data_source_config):
    mappings = derive_column_mappings(data_source_config)
    context = SecurityContext(accessible_tenant_ids=frozenset({1}))
    counter = builder.ParamCounter()
    where = builder.build_where_clause(
        [ChartFilter(field="measure", operator="eq", value="AR")], context, data_source_config, counter
    )
    order_by = builder.build_order_by(mappings)

    sql, params = builder.build_select_query(data_source_config, mappings, where, order_by, 500, counter)

    assert sql.startswith("SELECT practice_uid, provider_uid, measure, frequency, date_index,")
    assert "FROM ih.agg_app_measures WHERE practice_uid = ANY($1) AND measure = $2" in sql
    assert sql.endswith("ORDER BY date_index ASC LIMIT $3")
    assert params == [[1], "AR", 500]


def test_order_by_with_leading_measure(data_source_config):
    mappings = derive_column_mappings(data_source_config)
    assert builder.build_order_by(mappings, leading=["measure"]).sql == "ORDER BY measure, date_index ASC"


def test_aggregation_query_reuses_where_params(data_source_config):
    mappings = derive_column_mappings(data_source_config)
    context = SecurityContext(accessible_tenant_ids=frozenset({1}))
    where = builder.build_where_clause([], context, data_source_config)

    sql, params = builder.build_aggregation_query(data_source_config, mappings, where)

    assert sql.startswith("SELECT CASE WHEN measure_type IN ('currency', 'quantity') THEN SUM(measure_value)")
    assert sql.endswith("GROUP BY measure_type")
    assert params == [[1]]


def test_malformed_identifier_in_metadata_is_rejected():
    config = make_config(tenant_field="practice_uid OR 1=1")
    with pytest.raises(SecurityViolation):
        builder.build_where_clause([], SecurityContext(accessible_tenant_ids=frozenset({1})), config)


def with_date_column(data_type):
    config = make_config()
    columns = [
        col.model_copy(update={"data_type": data_type}) if col.column_name == "date_index" else col
        for col in config.columns
    ]
    return config.model_copy(update={"columns": columns})


@pytest.mark.parametrize(
    "data_type, expected",
    [
        ("timestamp with time zone", datetime(2024, 1, 1, tzinfo=timezone.utc)),
        ("TIMESTAMPTZ", datetime(2024, 1, 1, tzinfo=timezone.utc)),
        ("timestamp without time zone", datetime(2024, 1, 1)),
        (" Date ", date(2024, 1, 1)),
        # flagged date column with an unlisted type spelling
        ("daterange_day", date(2024, 1, 1)),
    ],
)
def test_date_values_bind_as_temporal_objects(data_type, expected):
    config = with_date_column(data_type)
    flt = ChartFilter(field="date_index", operator="gte", value="2024-01-01")

    fragment = builder.build_filter_predicate(flt, config, builder.ParamCounter())

    assert fragment.sql == "date_index >= $1"
    assert fragment.params == [expected]
    assert type(fragment.params[0]) is type(expected)


def test_text_date_column_keeps_strings():
    config = with_date_column("varchar(10)")
    flt = ChartFilter(field="date_index", operator="lte", value="2024-01-31")

    assert builder.build_filter_predicate(flt, config, builder.ParamCounter()).params == ["2024-01-31"]


def test_unparseable_date_value_is_rejected():
    config = with_date_column("timestamp with time zone")
    flt = ChartFilter(field="date_index", operator="eq", value="next tuesday")

    with pytest.raises(SanitizationRejection) as exc:
        builder.build_filter_predicate(flt, config, builder.ParamCounter())
    assert exc.value.field == "date_index"


@pytest.mark.asyncio
async def test_date_range_on_timestamptz_column_reaches_database_as_datetimes(
    fake_db, cache, retry_policy, tenant_context
):
    """start_date and end_date are bound as aware datetimes, never strings"""
    executor = QueryExecutor(fake_db, cache, retry_policy=retry_policy)
    params = QueryParams(data_source_id=1, start_date="2024-01-01", end_date="2024-03-31", nocache=True)

    await executor.execute_core(params, tenant_context, with_date_column("timestamp with time zone"))

    _, sql_params = fake_db.statements[0]
    assert sql_params[1:3] == [
        datetime(2024, 1, 1, tzinfo=timezone.utc),
        datetime(2024, 3, 31, tzinfo=timezone.utc),
    ]
