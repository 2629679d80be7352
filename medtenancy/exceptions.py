"""
Custom Exception Classes for the tenancy layer

This module defines the exceptions raised by tenant resolution, pool
management, provisioning and the platform management API. Each exception
carries the HTTP status and machine-readable error code used by the
exception handlers to build a consistent error response.
"""

from enum import Enum
from typing import Any

from fastapi import status


class ErrorCode(str, Enum):
    """Machine-readable error codes returned in every error response."""

    TENANT_NOT_FOUND = "TENANT_NOT_FOUND"
    TENANT_INVALID_CODE = "TENANT_INVALID_CODE"
    TENANT_INVALID_STATUS_TRANSITION = "TENANT_INVALID_STATUS_TRANSITION"
    TENANT_POOL_UNAVAILABLE = "TENANT_POOL_UNAVAILABLE"
    TENANT_PROVISIONING_FAILED = "TENANT_PROVISIONING_FAILED"
    TENANT_FEATURE_UNAVAILABLE = "TENANT_FEATURE_UNAVAILABLE"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    VALIDATION_DUPLICATE_RESOURCE = "VALIDATION_DUPLICATE_RESOURCE"
    INVALID_OPERATION = "INVALID_OPERATION"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class TenancyError(Exception):
    """Base exception class for all tenancy-related exceptions"""

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        if error_code is not None:
            self.error_code = error_code
        super().__init__(self.message)


# ============================================================================
# Tenant Resolution Exceptions
# ============================================================================


class TenantNotFoundError(TenancyError):
    """Raised when a request needs a tenant but none was resolved"""

    error_code = ErrorCode.TENANT_NOT_FOUND

    def __init__(self, message: str = "This domain is not registered with our platform"):
        super().__init__(message="Tenant not found", status_code=status.HTTP_404_NOT_FOUND)
        self.hint = message


class InvalidTenantCodeError(TenancyError):
    """Raised when a tenant code is not a safe database identifier"""

    error_code = ErrorCode.TENANT_INVALID_CODE

    def __init__(self, tenant_code: str):
        super().__init__(
            message="Invalid tenant code",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"tenant_code": tenant_code},
        )


class TenantFeatureUnavailableError(TenancyError):
    """Raised when a tenant database predates the tables a feature needs"""

    error_code = ErrorCode.TENANT_FEATURE_UNAVAILABLE

    def __init__(self, feature: str):
        super().__init__(
            message=f"{feature} is not available for this tenant. Please contact support to enable it.",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"feature": feature},
        )


# ============================================================================
# Pool & Provisioning Exceptions
# ============================================================================


class PoolCreationError(TenancyError):
    """Raised when a connection pool cannot be built for a tenant"""

    error_code = ErrorCode.TENANT_POOL_UNAVAILABLE

    def __init__(self, tenant_code: str):
        super().__init__(
            message="Tenant database is unavailable",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        self.tenant_code = tenant_code


class ProvisioningError(TenancyError):
    """Raised when materializing a tenant database fails part way through"""

    error_code = ErrorCode.TENANT_PROVISIONING_FAILED

    def __init__(self, tenant_code: str, reason: str, statement_index: int | None = None):
        super().__init__(
            message="Tenant provisioning failed",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        self.tenant_code = tenant_code
        self.reason = reason
        self.statement_index = statement_index

    def __str__(self) -> str:
        where = f" at statement {self.statement_index}" if self.statement_index is not None else ""
        return f"Provisioning of '{self.tenant_code}' failed{where}: {self.reason}"


# ============================================================================
# Resource & Validation Exceptions
# ============================================================================


class ResourceNotFoundError(TenancyError):
    """A registry row (tenant, domain binding) does not exist"""

    error_code = ErrorCode.RESOURCE_NOT_FOUND

    def __init__(self, resource_type: str, resource_id: Any | None = None):
        super().__init__(
            f"{resource_type} not found",
            status.HTTP_404_NOT_FOUND,
            {"resource_type": resource_type, "resource_id": resource_id},
        )


class ValidationError(TenancyError):
    """Request data that passed schema validation but not the handler's own checks"""

    error_code = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str, field: str | None = None, details: dict[str, Any] | None = None):
        details = dict(details or {})
        if field:
            details["field"] = field
        super().__init__(message, status.HTTP_400_BAD_REQUEST, details)


class DuplicateResourceError(TenancyError):
    """A unique registry value (tenant email, domain) is already taken"""

    error_code = ErrorCode.VALIDATION_DUPLICATE_RESOURCE

    def __init__(self, resource_type: str, field: str, value: Any):
        super().__init__(
            f"{resource_type} with {field} '{value}' already exists",
            status.HTTP_409_CONFLICT,
            {"resource_type": resource_type, "field": field, "value": value},
        )


class InvalidStatusTransitionError(TenancyError):
    """The tenant lifecycle does not allow moving between these two states"""

    error_code = ErrorCode.TENANT_INVALID_STATUS_TRANSITION

    def __init__(self, current_status: str, target_status: str):
        super().__init__(
            f"Tenant cannot move from '{current_status}' to '{target_status}'",
            status.HTTP_400_BAD_REQUEST,
            {"current_status": current_status, "target_status": target_status},
        )


class InvalidOperationError(TenancyError):
    error_code = ErrorCode.INVALID_OPERATION

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_400_BAD_REQUEST, details)
