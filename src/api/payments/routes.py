from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Body, Path, Request
from fastapi.responses import RedirectResponse

from src.api.payments.exceptions import PaymentGatewayError
from src.api.payments.models import (
    InitiatePaymentSchema,
    PaymentResponseSchema,
    RepairRefundsSchema,
    RepairSummarySchema,
)
from src.api.payments.service import CallbackResult, PaymentService
from src.config.settings import settings
from src.core.responses import success_response
from src.shared.error_handler import ErrorHandler
from src.shared.utils import get_client_ip

payments_router = APIRouter(prefix="/payments", tags=["Payments"])
payment_service = PaymentService()
error_handler = ErrorHandler(__name__)

GATEWAY_PATH = Path(..., description="Payment gateway: bkash or nagad")


def build_frontend_redirect(result: CallbackResult) -> str:
    """Frontend page the customer lands on after a gateway callback."""
    params = {"gateway": result.gateway}
    if result.invoice_id is not None:
        params["invoiceId"] = result.invoice_id
    if result.success:
        params["trxId"] = result.trx_id or "N/A"
    else:
        params["msg"] = result.message or "Payment failed"
    return f"{settings.FRONTEND_URL}/payment/{result.status}?{urlencode(params)}"


@payments_router.post(
    "/{gateway}/initiate",
    response_model=PaymentResponseSchema,
    summary="Initiate a gateway checkout for an invoice",
)
async def initiate_payment(
    request: Request,
    payment_data: InitiatePaymentSchema,
    gateway: str = GATEWAY_PATH,
):
    try:
        result = await payment_service.initiate_payment(
            gateway, payment_data.invoice_id, client_ip=get_client_ip(request)
        )
    except PaymentGatewayError as e:
        error_handler.handle_gateway_error(e, f"{gateway} payment initiation")
    return success_response(result)


@payments_router.get(
    "/{gateway}/callback",
    summary="Handle the customer's return from the gateway",
)
async def payment_callback(request: Request, gateway: str = GATEWAY_PATH):
    """
    Gateways redirect the customer here. The payment is finalized and the
    customer is sent on to the frontend success or failure page.
    """
    try:
        result = await payment_service.handle_callback(gateway, dict(request.query_params))
    except Exception as e:
        error_handler.logger.error(f"{gateway} callback processing error: {e}", exc_info=True)
        result = CallbackResult(success=False, gateway=gateway, message="System Error")

    return RedirectResponse(url=build_frontend_redirect(result), status_code=302)


@payments_router.post(
    "/{gateway}/refunds/repair",
    response_model=RepairSummarySchema,
    summary="Replay refunds that lack gateway-side proof",
)
async def repair_refunds(
    gateway: str = GATEWAY_PATH,
    options: Optional[RepairRefundsSchema] = Body(None),
):
    options = options or RepairRefundsSchema()
    summary = await payment_service.repair_refunds(
        gateway, refund_id=options.refund_id, dry_run=options.dry_run
    )
    return success_response(summary.to_dict())
