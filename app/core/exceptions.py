from typing import Dict, Any, Optional
from datetime import datetime
from fastapi import status
from pydantic import BaseModel
import logging

logger = logging.getLogger(__name__)


class BaseCustomException(Exception):
    """Base class for custom exceptions"""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.error_code = error_code
        super().__init__(self.message)


class NotFoundError(BaseCustomException):
    """Exception for resource not found errors"""

    def __init__(
        self,
        message: str = "Resource not found",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details=details,
            error_code=error_code or "NOT_FOUND_ERROR"
        )


class ConflictError(BaseCustomException):
    """Exception for conflict errors"""

    def __init__(
        self,
        message: str = "Resource conflict",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
            error_code=error_code or "CONFLICT_ERROR"
        )


class DatabaseError(BaseCustomException):
    """Exception for database errors"""

    def __init__(
        self,
        message: str = "Database operation failed",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
            error_code=error_code or "DATABASE_ERROR"
        )


class BusinessLogicError(BaseCustomException):
    """Exception for business logic errors"""

    def __init__(
        self,
        message: str = "Business logic error",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
            error_code=error_code or "BUSINESS_LOGIC_ERROR"
        )


class DuplicateBatchNumberError(ConflictError):
    """A batch with the same batch number already exists"""

    def __init__(self, batch_number: str):
        super().__init__(
            message=f"Batch number {batch_number} already exists",
            details={"batch_number": batch_number},
            error_code="DUPLICATE_BATCH_NUMBER"
        )


class StockInconsistencyError(ConflictError):
    """Raised when a mutation would leave a drug's stock counter negative"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            details=details,
            error_code="STOCK_INCONSISTENCY"
        )


class InsufficientStockError(BusinessLogicError):
    """Requested quantity exceeds what is left in the batch"""

    def __init__(self, batch_id: str, requested: int, available: Optional[int] = None):
        details = {"batch_id": batch_id, "requested": requested}
        if available is not None:
            details["available"] = available
        super().__init__(
            message="Insufficient drug quantity in batch",
            details=details,
            error_code="INSUFFICIENT_STOCK"
        )


class InvalidQuantityError(BusinessLogicError):
    def __init__(self, message: str = "Quantity cannot be negative", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            details=details,
            error_code="INVALID_QUANTITY"
        )


class DrugNotPrescribedError(BusinessLogicError):
    def __init__(self, drug_id: str, prescription_id: str):
        super().__init__(
            message=f"Drug {drug_id} is not prescribed on prescription {prescription_id}",
            details={"drug_id": drug_id, "prescription_id": prescription_id},
            error_code="DRUG_NOT_PRESCRIBED"
        )


# Response models for errors
class ErrorResponse(BaseModel):
    """Standard error response model"""
    error: str
    message: str
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    request_id: Optional[str] = None


def create_error_response(
    exception: BaseCustomException,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Create standardized error response"""
    response = {
        "error": exception.__class__.__name__.replace("Error", " Error"),
        "message": exception.message,
        "error_code": exception.error_code,
        "timestamp": datetime.utcnow().isoformat(),
        "request_id": request_id
    }

    if exception.details:
        response["details"] = exception.details

    return response


def handle_database_error(error: Exception, operation: str = "database operation") -> DatabaseError:
    """Handle database errors and convert to DatabaseError"""
    logger.error(f"Database error during {operation}: {error}")

    error_message = "Database operation failed"
    if "connection" in str(error).lower():
        error_message = "Database connection failed"
    elif "timeout" in str(error).lower():
        error_message = "Database operation timed out"
    elif "constraint" in str(error).lower():
        error_message = "Database constraint violation"

    return DatabaseError(
        message=error_message,
        details={"operation": operation, "original_error": str(error)},
        error_code="DATABASE_OPERATION_ERROR"
    )
