# backend/marketplace/core/exceptions.py
"""
Domain-specific exceptions for the marketplace settlement engine.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when input is malformed or out of range."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenException(DomainException):
    """Raised when the actor lacks the role or ownership for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class InvalidStateException(ConflictException):
    """Raised when an operation is not valid for the entity's current status."""

    def __init__(
        self,
        message: str,
        *,
        current_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = dict(details or {})
        if current_status is not None:
            merged["current_status"] = current_status
        super().__init__(message=message, code="INVALID_STATE", details=merged)


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class NotEligibleException(BusinessRuleException):
    """Raised when a refund request yields no eligible amount."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, code="NOT_ELIGIBLE", details=details)


class ServiceException(DomainException):
    """Raised when a service operation fails (transaction/commit failures)."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Specific business exceptions


class CapacityExhaustedException(ConflictException):
    """Raised when a service is fully booked for the requested day."""

    def __init__(self, service_id: str, booking_day: str, max_bookings: int):
        super().__init__(
            message="Service is fully booked for this date",
            code="RESOURCE_EXHAUSTED",
            details={
                "service_id": service_id,
                "booking_day": booking_day,
                "max_bookings": max_bookings,
            },
        )


class PaymentProcessingException(DomainException):
    """Raised when the payment gateway rejects or fails an operation."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str = "Payment processing failed. Please try again.",
        *,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = dict(details or {})
        merged["retryable"] = retryable
        super().__init__(message=message, code="PAYMENT_PROCESSING_FAILED", details=merged)
        self.retryable = retryable


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
