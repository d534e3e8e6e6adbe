import logging
import re
from typing import List, Optional

from analytics_engine.core.errors import SecurityViolation, ValidationIssue
from analytics_engine.core.schemas import (
    ComparisonType,
    DataSourceConfig,
    FilterOperator,
    QueryParams,
    ValidationResult,
)


# -----------------------------------------------------------------------------
# VALIDATOR MODULE
# Purpose: whitelist tables, columns and operators against a data source config.
# Anything not in the config fails closed; nothing is silently dropped.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

ALLOWED_OPERATORS = frozenset(op.value for op in FilterOperator)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def is_identifier(name: Optional[str]) -> bool:
    return bool(name) and bool(IDENTIFIER_PATTERN.match(name)) and len(name) <= 63


def validate_table(table: str, schema: str, config: Optional[DataSourceConfig]) -> None:
    """
    Check that schema.table is the active table of the given config.

    Raises:
        SecurityViolation: unknown, inactive or malformed table.
    """
    if config is None or not config.is_active:
        raise SecurityViolation("unauthorized table access", field="table")

    if not is_identifier(table) or not is_identifier(schema):
        raise SecurityViolation("malformed table identifier", field="table")

    if table != config.table_name or schema != config.schema_name:
        raise SecurityViolation("unauthorized table access", field="table")


def validate_field(field: str, table: str, schema: str, config: Optional[DataSourceConfig]) -> None:
    """
    Check that a column may be referenced in a query on schema.table.

    Raises:
        SecurityViolation: the column is not whitelisted for the table.
    """
    validate_table(table, schema, config)

    if not is_identifier(field) or field not in config.allowed_fields:
        # The field name can be attacker-supplied, keep it out of the message
        raise SecurityViolation("unauthorized field access", field=field if is_identifier(field) else None)


def validate_operator(op: str) -> None:
    """
    Raises:
        SecurityViolation: the operator is not in the global whitelist.
    """
    if op not in ALLOWED_OPERATORS:
        raise SecurityViolation("unauthorized operator", field="operator")


def validate_params(params: QueryParams, config: Optional[DataSourceConfig]) -> ValidationResult:
    """
    Validate a whole request and collect every problem instead of stopping
    at the first one, so the caller can fix the request in one round trip.

    Args:
        params: The request to check.
        config: Resolved data source config; None means unknown source.

    Returns:
        ValidationResult with is_valid False when any issue was found.
    """
    errors: List[ValidationIssue] = []

    try:
        validate_table(config.table_name if config else "", config.schema_name if config else "", config)
    except SecurityViolation as error:
        return ValidationResult(is_valid=False, errors=[ValidationIssue(error.field, error.message)])

    allowed_ops = config.allowed_operators_per_field

    for flt in params.filters:
        try:
            validate_field(flt.field, config.table_name, config.schema_name, config)
        except SecurityViolation as error:
            errors.append(ValidationIssue(error.field, error.message))
            continue

        try:
            validate_operator(flt.operator)
        except SecurityViolation:
            errors.append(ValidationIssue(flt.field, "unauthorized operator"))
            continue

        field_ops = allowed_ops.get(flt.field)
        if field_ops is not None and flt.operator not in field_ops:
            errors.append(ValidationIssue(flt.field, "operator not allowed for field"))

    if params.start_date and params.end_date and params.end_date < params.start_date:
        errors.append(ValidationIssue("end_date", "end_date must not be before start_date"))

    if params.measure is not None and config.measure_field not in config.allowed_fields:
        errors.append(ValidationIssue("measure", "data source has no measure column"))

    errors.extend(_validate_series(params, config))
    errors.extend(_validate_period_comparison(params))

    if errors:
        logger.info(
            f"Rejected query for data source {params.data_source_id}: "
            f"{len(errors)} issue(s) on {sorted({e.field or '-' for e in errors})}"
        )

    return ValidationResult(is_valid=not errors, errors=errors)


def _validate_series(params: QueryParams, config: DataSourceConfig) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    if not params.multiple_series:
        return issues

    if config.measure_field not in config.allowed_fields:
        issues.append(ValidationIssue("multiple_series", "data source has no measure column"))

    ids = [series.id for series in params.multiple_series]
    if len(ids) != len(set(ids)):
        issues.append(ValidationIssue("multiple_series", "series ids must be unique"))

    # Series are consolidated into one IN query, so they must share a frequency
    frequencies = {series.frequency for series in params.multiple_series if series.frequency}
    if params.frequency:
        frequencies.add(params.frequency)
    if len(frequencies) > 1:
        issues.append(ValidationIssue("multiple_series", "all series must use the same frequency"))

    return issues


def _validate_period_comparison(params: QueryParams) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    comparison = params.period_comparison
    if comparison is None or not comparison.enabled:
        return issues

    has_dates = (params.start_date and params.end_date) or comparison.current_range
    if not params.frequency:
        issues.append(ValidationIssue("frequency", "frequency is required for period comparison"))
    if not has_dates:
        issues.append(ValidationIssue("start_date", "a date range is required for period comparison"))

    if comparison.comparison_type == ComparisonType.CUSTOM_PERIOD and comparison.comparison_range is None:
        if comparison.custom_period_offset is None or comparison.custom_period_offset < 1:
            issues.append(ValidationIssue("period_comparison", "custom period offset must be at least 1"))

    return issues
