from fastapi import FastAPI
from src.api.payments.routes import payments_router
from src.middleware.error import http_exception_handler
from src.middleware.timing import add_process_time_header
from src.shared.utils import get_logger

logger = get_logger(__name__)

app = FastAPI(
    title="Billing Payments API",
    description="bKash and Nagad payment gateway integration for the billing system.",
    version="1.0.0",
)

app.include_router(payments_router)

app.add_exception_handler(Exception, http_exception_handler)

app.middleware("http")(add_process_time_header)


@app.get("/", tags=["App"])
async def read_root():
    return "Hello World!"
