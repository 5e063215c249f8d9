from datetime import datetime

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from src.api.payments.exceptions import PaymentGatewayError, error_context
from src.shared.utils import get_logger

logger = get_logger(__name__)


async def http_exception_handler(request: Request, exc: Exception):
    """Global exception handler for HTTP errors."""
    if isinstance(exc, HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "statusCode": exc.status_code,
                "timestamp": datetime.now().isoformat(),
                "path": request.url.path,
                "method": request.method,
                "message": exc.detail,
            },
        )

    if isinstance(exc, PaymentGatewayError):
        logger.error(f"Unhandled gateway error: {exc.message}", extra=error_context(exc))
    else:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "statusCode": status.HTTP_500_INTERNAL_SERVER_ERROR,
            "timestamp": datetime.now().isoformat(),
            "path": request.url.path,
            "method": request.method,
            "message": "Internal server error",
        },
    )
