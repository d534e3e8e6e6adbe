from dataclasses import dataclass
from typing import List, Optional


# -----------------------------------------------------------------------------
# ERRORS
# Purpose: one taxonomy for everything the query engine can reject or fail on.
# Messages carry field names and reasons, never raw filter values or SQL.
# -----------------------------------------------------------------------------


GENERIC_VALIDATION_MESSAGE = "query validation failed"
GENERIC_EXECUTION_MESSAGE = "query execution failed"


@dataclass(frozen=True)
class ValidationIssue:
    """A single reason a request was rejected."""

    field: Optional[str]
    reason: str


class AnalyticsError(Exception):
    """Base class for query engine errors."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def public_message(self) -> str:
        return GENERIC_EXECUTION_MESSAGE


class ValidationError(AnalyticsError):
    """Unknown table, field or operator. Always fail closed."""

    def public_message(self) -> str:
        return GENERIC_VALIDATION_MESSAGE


class SecurityViolation(ValidationError):
    """Whitelist breach, surfaced separately so it can be audited."""


class DataSourceNotFound(SecurityViolation):
    """Data source does not exist or is inactive."""


class SanitizationRejection(ValidationError):
    """A filter value failed its type or pattern check."""


class QueryValidationError(ValidationError):
    """Collected validation issues for one request."""

    def __init__(self, issues: List[ValidationIssue]):
        first = issues[0] if issues else ValidationIssue(None, "invalid query")
        super().__init__(first.reason, field=first.field)
        self.issues = issues


class ExecutionError(AnalyticsError):
    """Running the SQL failed."""

    retryable = False


class TransientExecutionError(ExecutionError):
    """Connection reset, deadlock, serialization failure. Retried with backoff."""

    retryable = True


class FatalExecutionError(ExecutionError):
    """Syntax error, constraint violation, anything a retry cannot fix."""


class PeriodComparisonError(ExecutionError):
    """One side of a period comparison failed; the other was cancelled."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
        self.retryable = isinstance(cause, (TransientExecutionError, TimeoutError))


class CacheError(AnalyticsError):
    """Cache store unavailable. Never leaves the cache layer."""
