import time

from fastapi import Request

from src.shared.utils import get_logger

logger = get_logger(__name__)


async def add_process_time_header(request: Request, call_next):
    """Add X-Process-Time and log the request line.

    Only the path is logged; gateway callbacks carry payment references in the
    query string.
    """
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    logger.info(
        f"{request.method} {request.url.path} - Status: {response.status_code} - {process_time:.4f}s"
    )
    return response
