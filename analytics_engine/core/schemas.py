from datetime import date
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, model_validator

from analytics_engine.core.errors import ValidationIssue


# =========================
# Enums
# =========================
class PermissionScope(str, Enum):
    OWN = "own"
    ORGANIZATION = "organization"
    ALL = "all"


class FilterOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    LIKE = "like"
    BETWEEN = "between"


class ComparisonType(str, Enum):
    PREVIOUS_PERIOD = "previous_period"
    SAME_PERIOD_LAST_YEAR = "same_period_last_year"
    CUSTOM_PERIOD = "custom_period"


class SeriesAggregation(str, Enum):
    SUM = "sum"
    AVG = "avg"
    COUNT = "count"
    MIN = "min"
    MAX = "max"


# =========================
# SECURITY CONTEXT
# =========================
class SecurityContext(BaseModel):
    """
    Resolved row-level access for one request.
    Built by the authorization layer, never persisted by the engine.
    """

    user_id: Optional[int] = None
    accessible_tenant_ids: FrozenSet[int] = frozenset()
    accessible_sub_entity_ids: FrozenSet[int] = frozenset()
    permission_scope: PermissionScope = PermissionScope.OWN

    model_config = ConfigDict(frozen=True)


# =========================
# QUERY PARAMS
# =========================
class ChartFilter(BaseModel):
    field: str = Field(min_length=1, max_length=128)
    # Raw string on purpose: unknown operators must reach the validator
    operator: str = FilterOperator.EQ.value
    value: Any = None

    model_config = ConfigDict(frozen=True)


class SeriesSpec(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    measure: str = Field(min_length=1)
    label: Optional[str] = None
    aggregation: SeriesAggregation = SeriesAggregation.SUM
    color: Optional[str] = None
    frequency: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class DateRange(BaseModel):
    start: date
    end: date

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def check_order(self):
        if self.end < self.start:
            raise ValueError("range end must not be before range start")
        return self


class PeriodComparison(BaseModel):
    enabled: bool = False
    comparison_type: ComparisonType = ComparisonType.PREVIOUS_PERIOD
    custom_period_offset: Optional[int] = None
    current_range: Optional[DateRange] = None
    comparison_range: Optional[DateRange] = None

    model_config = ConfigDict(frozen=True)


class QueryParams(BaseModel):
    """
    One analytics request. Never mutated after validation: every
    transformation goes through model_copy(update=...).
    """

    data_source_id: int = Field(gt=0)
    measure: Optional[str] = None
    frequency: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    filters: List[ChartFilter] = []
    multiple_series: Optional[List[SeriesSpec]] = None
    period_comparison: Optional[PeriodComparison] = None
    include_totals: bool = False
    limit: Optional[int] = Field(default=None, ge=1, le=100000)
    nocache: bool = False

    model_config = ConfigDict(frozen=True)


# =========================
# DATA SOURCE METADATA
# =========================
class DataSourceColumn(BaseModel):
    column_name: str
    data_type: str = "text"
    is_filterable: bool = True
    is_measure: bool = False
    is_measure_type: bool = False
    is_date_field: bool = False
    is_time_period: bool = False
    allowed_operators: Optional[List[str]] = None

    model_config = ConfigDict(from_attributes=True)


class DataSourceConfig(BaseModel):
    data_source_id: int
    schema_name: str
    table_name: str
    is_active: bool = True
    tenant_field: str = "practice_uid"
    sub_entity_field: str = "provider_uid"
    measure_field: str = "measure"
    columns: List[DataSourceColumn] = []

    model_config = ConfigDict(from_attributes=True)

    @property
    def all_columns(self) -> List[str]:
        return [col.column_name for col in self.columns]

    @property
    def allowed_fields(self) -> Set[str]:
        return {
            col.column_name
            for col in self.columns
            if col.is_filterable
            or col.is_date_field
            or col.is_time_period
            or col.column_name == self.measure_field
        }

    @property
    def allowed_operators_per_field(self) -> Dict[str, Set[str]]:
        return {
            col.column_name: set(col.allowed_operators)
            for col in self.columns
            if col.allowed_operators is not None
        }


class ColumnMappings(BaseModel):
    date_field: str
    time_period_field: str
    measure_value_field: str
    measure_type_field: str
    all_columns: List[str]


# =========================
# RESULTS
# =========================
class QueryResult(BaseModel):
    rows: List[Dict[str, Any]] = []
    row_count: int = 0
    query_time_ms: int = 0
    cache_hit: bool = False
    total: Optional[float] = None


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[ValidationIssue] = []


class InvalidationResponse(BaseModel):
    data_source_id: int
    results_deleted: int
