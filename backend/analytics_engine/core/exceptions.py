"""
Engine exception taxonomy.

Record-level errors are recovered inside the transformation engine, run-level
errors abort a single pipeline run, and query errors surface to the caller of
the query executor.
"""
from typing import Any, Dict, Optional


class AnalyticsEngineError(Exception):
    """Base class for all engine errors."""

    default_code = "ANALYTICS_ENGINE_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}
        self.cause = cause
        # Set by the pipeline runner when the error aborted a run
        self.job_result = None
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "cause": str(self.cause) if self.cause else None,
        }


class ConfigurationError(AnalyticsEngineError):
    """Malformed pipeline, step, schedule or query definition. Never retried."""

    default_code = "CONFIGURATION_ERROR"


class RecordError(AnalyticsEngineError):
    """A single record failed validation or transformation."""

    default_code = "RECORD_ERROR"

    def __init__(self, message: str, step_id: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        if step_id:
            details["step_id"] = step_id
        super().__init__(message, details=details, **kwargs)
        self.step_id = step_id


class ExpressionError(RecordError):
    """A calculated-field expression could not be evaluated for a record."""

    default_code = "EXPRESSION_ERROR"


class ExtractError(AnalyticsEngineError):
    """I/O failure while reading from a pipeline source."""

    default_code = "EXTRACT_ERROR"


class LoadError(AnalyticsEngineError):
    """I/O failure while writing to a pipeline destination."""

    default_code = "LOAD_ERROR"


class QueryExecutionError(AnalyticsEngineError):
    """An analytics query failed for a reason other than a timeout."""

    default_code = "QUERY_EXECUTION_ERROR"


class QueryTimeout(AnalyticsEngineError):
    """An analytics query exceeded its wall-clock timeout."""

    default_code = "QUERY_TIMEOUT"

    def __init__(self, message: str, timeout: float, query_id: Optional[str] = None):
        super().__init__(message, details={"timeout": timeout, "query_id": query_id})
        self.timeout = timeout
        self.query_id = query_id


class CacheError(AnalyticsEngineError):
    """The cache backend is unavailable or returned garbage."""

    default_code = "CACHE_ERROR"


class PipelineNotFoundError(AnalyticsEngineError):
    """No pipeline with the requested id is registered."""

    default_code = "PIPELINE_NOT_FOUND"
