"""
Error Catalog Module

Structured failure catalog with error codes and metadata.

Features:
- Canonical error codes (PFLW-XXXX format)
- Error categories (validation, resource, transformation, schedule, ...)
- Machine-readable error responses for the polling API
- HTTP status code mapping

Usage:
    from parcelflow.core.errors import (
        ErrorCategory, ResourceNotFoundError, get_errors_by_category,
    )

    raise ResourceNotFoundError("PFLW-2001", job_id=job_id)

    get_errors_by_category(ErrorCategory.RESOURCE)  # served at GET /v1/errors
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Error categories for classification."""
    VALIDATION = "validation"            # Bad input / configuration
    RESOURCE = "resource"                # Entity not found
    TRANSFORMATION = "transformation"    # Rule failures
    SCHEDULE = "schedule"                # Schedule expression problems
    STATE = "state"                      # Lifecycle violations
    EXTERNAL = "external"                # Connector failures
    DATA = "data"                        # Data quality issues


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ErrorDefinition:
    """Definition of an error in the catalog."""
    code: str                    # e.g., "PFLW-1001"
    message: str                 # Human-readable message template
    category: ErrorCategory
    severity: ErrorSeverity
    http_status: int
    description: str = ""
    resolution: str = ""
    retry_allowed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "http_status": self.http_status,
            "description": self.description,
            "resolution": self.resolution,
            "retry_allowed": self.retry_allowed,
        }


# =============================================================================
# Error Catalog (Canonical Error Definitions)
# =============================================================================

ERROR_CATALOG: Dict[str, ErrorDefinition] = {
    # =========================================================================
    # 1000-1999: Validation Errors
    # =========================================================================
    "PFLW-1001": ErrorDefinition(
        code="PFLW-1001",
        message="Invalid request: {reason}",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        http_status=400,
        resolution="Check the request fields and try again",
    ),
    "PFLW-1002": ErrorDefinition(
        code="PFLW-1002",
        message="Unsupported data source kind: {kind}",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        http_status=400,
        description="Data sources must be of kind database, api, file or memory",
    ),
    "PFLW-1003": ErrorDefinition(
        code="PFLW-1003",
        message="Invalid connection settings for {source}: {reason}",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        http_status=400,
        resolution="Review the connection settings of the data source",
    ),

    # =========================================================================
    # 2000-2999: Resource Errors
    # =========================================================================
    "PFLW-2001": ErrorDefinition(
        code="PFLW-2001",
        message="Job not found: {job_id}",
        category=ErrorCategory.RESOURCE,
        severity=ErrorSeverity.ERROR,
        http_status=404,
        resolution="Use /v1/jobs to list available jobs",
    ),
    "PFLW-2002": ErrorDefinition(
        code="PFLW-2002",
        message="Data source not found: {source_id}",
        category=ErrorCategory.RESOURCE,
        severity=ErrorSeverity.ERROR,
        http_status=404,
        description="The job references a data source that does not exist or was deleted",
        resolution="Register the data source or point the job at an existing one",
    ),
    "PFLW-2003": ErrorDefinition(
        code="PFLW-2003",
        message="Transformation rule not found: {rule_id}",
        category=ErrorCategory.RESOURCE,
        severity=ErrorSeverity.ERROR,
        http_status=404,
        description="The job references a transformation rule that does not exist or was deleted",
    ),
    "PFLW-2004": ErrorDefinition(
        code="PFLW-2004",
        message="Batch job not found: {batch_id}",
        category=ErrorCategory.RESOURCE,
        severity=ErrorSeverity.ERROR,
        http_status=404,
    ),
    "PFLW-2005": ErrorDefinition(
        code="PFLW-2005",
        message="Alert not found: {alert_id}",
        category=ErrorCategory.RESOURCE,
        severity=ErrorSeverity.ERROR,
        http_status=404,
    ),
    "PFLW-2006": ErrorDefinition(
        code="PFLW-2006",
        message="Optimization suggestion not found: {suggestion_id}",
        category=ErrorCategory.RESOURCE,
        severity=ErrorSeverity.ERROR,
        http_status=404,
    ),
    "PFLW-2007": ErrorDefinition(
        code="PFLW-2007",
        message="Transform function not registered: {name}",
        category=ErrorCategory.RESOURCE,
        severity=ErrorSeverity.ERROR,
        http_status=404,
        resolution="Register the function with TransformRegistry.register",
    ),
    "PFLW-2008": ErrorDefinition(
        code="PFLW-2008",
        message="Error code not in catalog: {code}",
        category=ErrorCategory.RESOURCE,
        severity=ErrorSeverity.INFO,
        http_status=404,
        resolution="List known codes with GET /v1/errors",
    ),

    # =========================================================================
    # 3000-3999: Transformation Errors
    # =========================================================================
    "PFLW-3001": ErrorDefinition(
        code="PFLW-3001",
        message="Transformation '{rule}' failed: {reason}",
        category=ErrorCategory.TRANSFORMATION,
        severity=ErrorSeverity.WARNING,
        http_status=422,
    ),
    "PFLW-3002": ErrorDefinition(
        code="PFLW-3002",
        message="Record failed validation: {reason}",
        category=ErrorCategory.TRANSFORMATION,
        severity=ErrorSeverity.WARNING,
        http_status=422,
    ),
    "PFLW-3003": ErrorDefinition(
        code="PFLW-3003",
        message="All {count} records failed transformation",
        category=ErrorCategory.TRANSFORMATION,
        severity=ErrorSeverity.ERROR,
        http_status=422,
        resolution="Inspect the run's transform errors and fix the rules or the source data",
    ),

    # =========================================================================
    # 4000-4999: Schedule Errors
    # =========================================================================
    "PFLW-4001": ErrorDefinition(
        code="PFLW-4001",
        message="Invalid schedule expression '{expression}': {reason}",
        category=ErrorCategory.SCHEDULE,
        severity=ErrorSeverity.WARNING,
        http_status=400,
        description="Schedules use 5 whitespace-separated fields: minute hour day month weekday",
        resolution="Use a five-field expression such as '*/15 * * * *'",
    ),

    # =========================================================================
    # 5000-5999: State Errors
    # =========================================================================
    "PFLW-5001": ErrorDefinition(
        code="PFLW-5001",
        message="Invalid status transition for {entity}: {current} -> {target}",
        category=ErrorCategory.STATE,
        severity=ErrorSeverity.ERROR,
        http_status=409,
    ),

    # =========================================================================
    # 6000-6999: Connector Errors
    # =========================================================================
    "PFLW-6001": ErrorDefinition(
        code="PFLW-6001",
        message="Data source unavailable: {source}",
        category=ErrorCategory.EXTERNAL,
        severity=ErrorSeverity.ERROR,
        http_status=503,
        description="The availability probe for the data source failed",
        resolution="Check connectivity; the job stays enabled for its next trigger",
        retry_allowed=True,
    ),
    "PFLW-6002": ErrorDefinition(
        code="PFLW-6002",
        message="Extract from {source} failed: {reason}",
        category=ErrorCategory.EXTERNAL,
        severity=ErrorSeverity.ERROR,
        http_status=502,
        retry_allowed=True,
    ),
    "PFLW-6003": ErrorDefinition(
        code="PFLW-6003",
        message="Load into {source} failed: {reason}",
        category=ErrorCategory.EXTERNAL,
        severity=ErrorSeverity.ERROR,
        http_status=502,
        retry_allowed=True,
    ),

    # =========================================================================
    # 7000-7999: Data Quality Errors
    # =========================================================================
    "PFLW-7001": ErrorDefinition(
        code="PFLW-7001",
        message="Insufficient data for statistics: {rows} records (minimum: {min_rows})",
        category=ErrorCategory.DATA,
        severity=ErrorSeverity.WARNING,
        http_status=422,
        resolution="Provide more records or lower min_properties_for_stats",
    ),
}


# =============================================================================
# Exception Classes
# =============================================================================

class ParcelflowError(Exception):
    """Base exception for parcelflow errors."""

    def __init__(
        self,
        code: str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        **format_args,
    ):
        self.code = code
        self.details = details or {}
        self.definition = ERROR_CATALOG.get(code)

        if self.definition:
            if message:
                self.message = message
            else:
                try:
                    self.message = self.definition.message.format(**format_args)
                except KeyError:
                    self.message = self.definition.message
            self.http_status = self.definition.http_status
            self.category = self.definition.category
        else:
            self.message = message or f"Unknown error: {code}"
            self.http_status = 500
            self.category = ErrorCategory.STATE

        super().__init__(self.message)

    def to_response(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Convert to API error response."""
        response = {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category.value,
            },
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

        if self.details:
            safe_details = {k: v for k, v in self.details.items()
                            if k not in ("password", "token", "secret", "api_key")}
            response["error"]["details"] = safe_details

        if request_id:
            response["request_id"] = request_id

        if self.definition:
            response["error"]["retry_allowed"] = self.definition.retry_allowed
            if self.definition.resolution:
                response["error"]["resolution"] = self.definition.resolution

        return response


class ValidationError(ParcelflowError):
    """Validation errors (1000 series)."""
    pass


class ResourceNotFoundError(ParcelflowError):
    """Resource not found errors (2000 series)."""
    pass


class TransformationError(ParcelflowError):
    """Transformation rule errors (3000 series)."""
    pass


class RecordValidationError(TransformationError):
    """Raised by validating transforms when a record is rejected."""

    def __init__(self, reason: str):
        super().__init__("PFLW-3002", reason=reason)
        self.reason = reason


class ScheduleParseError(ParcelflowError):
    """Unparsable schedule expression (4000 series)."""

    def __init__(self, expression: str, reason: str):
        super().__init__("PFLW-4001", expression=expression, reason=reason)
        self.expression = expression
        self.reason = reason


class InvalidTransitionError(ParcelflowError):
    """Lifecycle state machine violations (5000 series)."""
    pass


class ConnectorError(ParcelflowError):
    """Connector unavailable or extract/load failure (6000 series)."""
    pass


class DataQualityError(ParcelflowError):
    """Data quality errors (7000 series)."""
    pass


# =============================================================================
# Helper Functions
# =============================================================================

def get_error_catalog() -> Dict[str, Dict[str, Any]]:
    """Get the full error catalog as JSON-serializable dict."""
    return {code: defn.to_dict() for code, defn in ERROR_CATALOG.items()}


def get_errors_by_category(category: ErrorCategory) -> List[Dict[str, Any]]:
    """Get all errors in a category."""
    return [
        defn.to_dict() for defn in ERROR_CATALOG.values()
        if defn.category == category
    ]
