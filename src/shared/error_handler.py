"""
Centralized error handling utilities for consistent error management across services.
"""
from typing import Optional, Any, Dict, NoReturn
from functools import wraps
from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError, IntegrityError, DatabaseError
from src.api.payments.exceptions import (
    ConfigurationError,
    DecryptionError,
    PaymentGatewayError,
    RemoteProtocolError,
    TransportError,
    error_context,
)
from src.shared.exceptions import (
    ResourceNotFoundException,
    ConflictException,
    BadRequestException,
    ServiceUnavailableException,
)
from src.shared.utils import get_logger


class ServiceError(Exception):
    """Base service error with context"""
    def __init__(self, message: str, original_error: Optional[Exception] = None, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        super().__init__(self.message)


class ErrorHandler:
    """Centralized error handler for services"""

    def __init__(self, logger_name: str):
        self.logger = get_logger(logger_name)

    def handle_database_error(self, error: Exception, operation: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Handle database-related errors with proper logging and exceptions"""
        context = context or {}

        if isinstance(error, IntegrityError):
            error_msg = str(error.orig) if hasattr(error, 'orig') else str(error)
            self.logger.error(f"Database integrity error during {operation}: {error_msg}", extra=context)

            # Check for common integrity constraint violations
            if "foreign key constraint" in error_msg.lower():
                raise ResourceNotFoundException(detail=f"Referenced resource not found for {operation}")
            elif "unique constraint" in error_msg.lower() or "duplicate key" in error_msg.lower():
                raise ConflictException(detail=f"Resource already exists for {operation}")
            else:
                raise ServiceError(f"Data integrity error during {operation}", error, context)

        elif isinstance(error, DatabaseError):
            self.logger.error(f"Database error during {operation}: {str(error)}", extra=context)
            raise ServiceError(f"Database operation failed for {operation}", error, context)

        elif isinstance(error, SQLAlchemyError):
            self.logger.error(f"SQLAlchemy error during {operation}: {str(error)}", extra=context)
            raise ServiceError(f"Database operation failed for {operation}", error, context)

        else:
            # Not a database error, re-raise as is
            raise error

    def handle_gateway_error(self, error: PaymentGatewayError, operation: str) -> NoReturn:
        """
        Translate a gateway integration error into an HTTP error.

        Configuration and decryption problems are ours (500); transport and
        protocol failures mean the gateway is unavailable (503).
        """
        context = error_context(error)

        if isinstance(error, (TransportError, RemoteProtocolError)):
            self.logger.error(f"Gateway unavailable during {operation}: {error.message}", extra=context)
            raise ServiceUnavailableException(detail=error.message)

        if isinstance(error, ConfigurationError):
            self.logger.error(f"Gateway configuration error during {operation}: {error.message}", extra=context)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Payment gateway is not configured correctly: {error.message}",
            )

        if isinstance(error, DecryptionError):
            self.logger.error(f"Decryption error during {operation}: {error.message}", extra=context)
        else:
            self.logger.error(f"Gateway error during {operation}: {error.message}", extra=context, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Unexpected payment gateway error during {operation}",
        )

    def handle_general_error(self, error: Exception, operation: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Handle general errors with proper logging"""
        context = context or {}

        if isinstance(error, (ResourceNotFoundException, ConflictException, BadRequestException)):
            # Already a proper HTTP exception, just log and re-raise
            self.logger.info(f"Known error during {operation}: {error.detail}", extra=context)
            raise error

        elif isinstance(error, ServiceError):
            self.logger.error(f"Service error during {operation}: {error.message}", extra=context)
            raise ServiceError(error.message, error.original_error, error.context)

        else:
            # Unknown error, log with full context
            self.logger.error(f"Unexpected error during {operation}: {str(error)}",
                            extra=context, exc_info=True)
            raise ServiceError(f"Unexpected error during {operation}", error, context)

    def log_success(self, operation: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Log successful operations"""
        context = context or {}
        self.logger.info(f"Successfully completed {operation}", extra=context)


def handle_service_errors(operation: str):
    """Decorator for handling service method errors"""
    def decorator(func):
        @wraps(func)
        async def async_wrapper(self, *args, **kwargs):
            error_handler = getattr(self, '_error_handler', None)
            if not error_handler:
                error_handler = ErrorHandler(self.__class__.__name__)

            try:
                result = await func(self, *args, **kwargs)
                error_handler.log_success(operation, {"function_args": str(args)[:100], "function_kwargs": str(kwargs)[:100]})
                return result
            except Exception as e:
                context = {
                    "method": func.__name__,
                    "function_args": str(args)[:100],
                    "function_kwargs": str(kwargs)[:100]
                }

                # Let HTTPException (business logic exceptions) and gateway errors pass through
                if isinstance(e, (HTTPException, PaymentGatewayError)):
                    raise e
                elif isinstance(e, (IntegrityError, DatabaseError, SQLAlchemyError)):
                    error_handler.handle_database_error(e, operation, context)
                else:
                    error_handler.handle_general_error(e, operation, context)

        return async_wrapper

    return decorator
