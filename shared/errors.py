"""
Shared error handling for the Warehouse Rules platform.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class RulesServiceException(Exception):
    """Base exception for Warehouse Rules services."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(RulesServiceException):
    """Validation-related errors."""

    status_code = 422

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class RuleNotFoundError(RulesServiceException):
    """Raised when a rule id does not exist in the repository."""

    status_code = 404

    def __init__(self, rule_id: str, details: Optional[Dict[str, Any]] = None):
        self.rule_id = rule_id
        super().__init__("RULE_NOT_FOUND", f"Rule {rule_id} not found", details)


class RuleLifecycleError(RulesServiceException):
    """Invalid status transition or edit of an archived rule."""

    status_code = 409

    def __init__(self, message: str = "Invalid rule transition", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_RULE_TRANSITION", message, details)


class RepositoryError(RulesServiceException):
    """Rule storage could not be read or written."""

    status_code = 503

    def __init__(self, message: str = "Rule repository error", details: Optional[Dict[str, Any]] = None):
        super().__init__("REPOSITORY_ERROR", message, details)


class RuleEngineError(RulesServiceException):
    """Engine-level failure that aborts a whole fire call."""

    status_code = 503

    def __init__(self, code: str = "RULE_ENGINE_ERROR", message: str = "Rule engine error",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)


class ExternalServiceError(RulesServiceException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)
