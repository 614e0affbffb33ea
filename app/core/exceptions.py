"""
Custom exception classes for the CampusReport backend.

This module defines all custom exceptions used throughout the application.
Each exception carries an HTTP status, a stable error code and optional
details so the handlers in ``app.main`` can render a uniform JSON body.
"""

from typing import Any, Dict, Optional

from fastapi import status


class CampusReportException(Exception):
    """Base exception class for all CampusReport exceptions."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str = "An error occurred in CampusReport",
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message
        self.error_code = error_code or "INTERNAL_ERROR"
        self.details = details or {}
        self.headers = headers
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


# =============================================================================
# Request / Access Exceptions
# =============================================================================

class ValidationError(CampusReportException):
    """Raised when data validation fails."""

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_code: str = "VALIDATION_ERROR",
    ):
        if field and details is None:
            details = {"field": field}
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class AuthenticationError(CampusReportException):
    """Raised when authentication fails."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            error_code="AUTHENTICATION_REQUIRED",
            status_code=status.HTTP_401_UNAUTHORIZED,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(CampusReportException):
    """Raised when user lacks permission for an operation."""

    def __init__(
        self,
        message: str = "Permission denied",
        required_role: Optional[str] = None,
        resource: Optional[str] = None
    ):
        details = {}
        if required_role:
            details["required_role"] = required_role
        if resource:
            details["resource"] = resource

        super().__init__(
            message=message,
            error_code="PERMISSION_DENIED",
            details=details,
            status_code=status.HTTP_403_FORBIDDEN,
        )


class NotFoundError(CampusReportException):
    """Raised when a requested resource is not found."""

    def __init__(
        self,
        resource: str,
        identifier: Optional[str] = None,
        message: Optional[str] = None
    ):
        if message is None:
            message = f"{resource} not found"
            if identifier:
                message += f" (ID: {identifier})"

        super().__init__(
            message=message,
            error_code="RESOURCE_NOT_FOUND",
            details={"resource": resource, "identifier": identifier},
            status_code=status.HTTP_404_NOT_FOUND,
        )


class ConflictError(CampusReportException):
    """Raised when a unique field is already taken."""

    def __init__(self, message: str = "Resource already exists", field: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="CONFLICT",
            details={"field": field} if field else {},
            status_code=status.HTTP_409_CONFLICT,
        )


class InternalError(CampusReportException):
    """Raised for database and other unexpected failures."""

    def __init__(self, message: str = "Internal server error", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="INTERNAL_ERROR",
            details=details,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


# =============================================================================
# Business Logic Exceptions
# =============================================================================

class ReportNotFoundError(NotFoundError):
    """Raised when a report is not found."""

    def __init__(self, report_id: str):
        super().__init__(resource="Report", identifier=report_id)


class ReportStatusError(ValidationError):
    """Raised when report status transition is invalid."""

    def __init__(
        self,
        current_status: str,
        attempted_status: str,
        message: Optional[str] = None
    ):
        if message is None:
            message = f"Cannot change report status from '{current_status}' to '{attempted_status}'"

        super().__init__(
            message=message,
            error_code="INVALID_STATUS_TRANSITION",
            details={
                "current_status": current_status,
                "attempted_status": attempted_status
            }
        )


# =============================================================================
# AI Collaborator Exceptions
# =============================================================================

class AiAnalysisError(CampusReportException):
    """Raised when the generative model call fails."""

    def __init__(self, message: str = "Failed to analyze content", upstream_message: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="AI_ANALYSIS_FAILED",
            details={"upstream_message": upstream_message} if upstream_message else {},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class AiParseError(CampusReportException):
    """Raised when the model answer is not a well-formed damage analysis."""

    def __init__(self, message: str = "AI response could not be parsed", raw_response: Optional[str] = None):
        details = {}
        if raw_response is not None:
            details["raw_response"] = raw_response[:500]
        super().__init__(
            message=message,
            error_code="AI_PARSE_FAILED",
            details=details,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
