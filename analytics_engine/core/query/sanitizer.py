import math
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, List

from analytics_engine.core.errors import SanitizationRejection
from analytics_engine.core.schemas import ChartFilter, FilterOperator


# -----------------------------------------------------------------------------
# SANITIZER MODULE
# Purpose: reject obviously malicious filter values early and normalize types.
# Values are only ever bound as parameters; this is not the injection defense,
# parameterization is.
# -----------------------------------------------------------------------------

SAFE_STRING_PATTERN = re.compile(r"[A-Za-z0-9 \-_.,()&%/:]+")
DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")

MAX_STRING_LENGTH = 256
MAX_LIST_LENGTH = 1000

LIST_OPERATORS = {FilterOperator.IN.value, FilterOperator.NOT_IN.value}
NULLABLE_OPERATORS = {FilterOperator.EQ.value, FilterOperator.NEQ.value}


def is_valid_date_string(value: str) -> bool:
    """Strict YYYY-MM-DD that is also a real calendar date."""
    if not DATE_PATTERN.fullmatch(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def is_safe_string(value: str) -> bool:
    return bool(SAFE_STRING_PATTERN.fullmatch(value))


def sanitize_single_value(value: Any) -> Any:
    """
    Sanitize one scalar by type.

    Raises:
        SanitizationRejection: the value fails its type or pattern check.
    """
    # bool before int, bool is an int subclass
    if isinstance(value, bool):
        return value

    if isinstance(value, int):
        return value

    if isinstance(value, float):
        if not math.isfinite(value):
            raise SanitizationRejection("number must be finite")
        return value

    if isinstance(value, Decimal):
        if not value.is_finite():
            raise SanitizationRejection("number must be finite")
        return value

    if isinstance(value, datetime):
        return value.date().isoformat()

    if isinstance(value, date):
        return value.isoformat()

    if isinstance(value, str):
        if len(value) > MAX_STRING_LENGTH:
            raise SanitizationRejection("string value too long")
        if DATE_PATTERN.fullmatch(value):
            if not is_valid_date_string(value):
                raise SanitizationRejection("invalid calendar date")
            return value
        if not is_safe_string(value):
            # Rejected whole, never partially escaped
            raise SanitizationRejection("string contains disallowed characters")
        return value

    raise SanitizationRejection(f"unsupported value type {type(value).__name__}")


def sanitize_value(value: Any, operator: str) -> Any:
    """
    Sanitize a filter value according to its operator.

    in / not_in sanitize every list element, between sanitizes a pair,
    everything else takes a single scalar.

    Raises:
        SanitizationRejection: wrong shape for the operator or a bad element.
    """
    if operator in LIST_OPERATORS:
        if not isinstance(value, (list, tuple)) or len(value) == 0:
            raise SanitizationRejection(f"{operator} operator requires a non-empty list")
        if len(value) > MAX_LIST_LENGTH:
            raise SanitizationRejection(f"{operator} list is too long")
        return [sanitize_single_value(item) for item in value]

    if operator == FilterOperator.BETWEEN.value:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise SanitizationRejection("between operator requires exactly two values")
        return [sanitize_single_value(item) for item in value]

    if value is None:
        if operator in NULLABLE_OPERATORS:
            return None
        raise SanitizationRejection(f"{operator} operator requires a value")

    if isinstance(value, (list, tuple, dict)):
        raise SanitizationRejection(f"{operator} operator requires a single value")

    return sanitize_single_value(value)


def sanitize_filters(filters: List[ChartFilter]) -> List[ChartFilter]:
    """
    Return new filters with sanitized values. The input list is not touched.

    Raises:
        SanitizationRejection: with the offending field name attached.
    """
    sanitized = []
    for flt in filters:
        try:
            clean = sanitize_value(flt.value, flt.operator)
        except SanitizationRejection as error:
            raise SanitizationRejection(error.message, field=flt.field) from None
        sanitized.append(flt.model_copy(update={"value": clean}))
    return sanitized
