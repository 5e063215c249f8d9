from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.api.payments.exceptions import (
    PaymentGatewayError,
    error_context,
    extract_remote_message,
)
from src.api.payments.providers.base import BasePaymentProvider, format_amount
from src.api.payments.providers.bkash import BkashProvider
from src.api.payments.providers.factory import PaymentFactory, gateway_slug, resolve_gateway
from src.api.payments.providers.nagad import NagadProvider
from src.api.payments.services.gateway_log_service import (
    GatewayLogService,
    is_authoritative_success,
    parse_payload,
)
from src.api.payments.services.reconciliation_service import (
    ReconciliationService,
    RepairSummary,
)
from src.config.constants import (
    Gateway,
    GatewayLogStatus,
    InvoiceStatus,
    TransactionStatus,
)
from src.config.settings import settings
from src.database.connection import AsyncSessionLocal
from src.database.models.invoice import Invoice
from src.database.models.transaction import Transaction
from src.shared.error_handler import ErrorHandler, handle_service_errors
from src.shared.exceptions import (
    BadRequestException,
    ConflictException,
    ResourceNotFoundException,
)

BKASH_FAILED_CALLBACK_STATUSES = ("cancel", "failure")


@dataclass
class CallbackResult:
    success: bool
    gateway: str
    invoice_id: Optional[int] = None
    trx_id: Optional[str] = None
    message: Optional[str] = None

    @property
    def status(self) -> str:
        return "success" if self.success else "failed"


class PaymentService:
    """
    Payment orchestration.
    Coordinates the gateway providers, the audit trail and invoice bookkeeping.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        log_service: Optional[GatewayLogService] = None,
        providers: Optional[Dict[Gateway, BasePaymentProvider]] = None,
        reconciliation: Optional[ReconciliationService] = None,
    ):
        self._error_handler = ErrorHandler(__name__)
        self._session_factory = session_factory or AsyncSessionLocal
        self._logs = log_service or GatewayLogService(self._session_factory)
        self._providers = providers or {}
        self._reconciliation = reconciliation or ReconciliationService(
            session_factory=self._session_factory,
            log_service=self._logs,
            providers=self._providers,
        )

    def _provider(self, gateway: Gateway) -> BasePaymentProvider:
        return self._providers.get(gateway) or PaymentFactory.get_provider(gateway)

    async def initiate_payment(
        self,
        gateway: Union[Gateway, str],
        invoice_id: int,
        client_ip: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Start a gateway checkout for the outstanding amount of an invoice.

        Returns:
            Dict with ``redirect_url`` and ``correlation_id``
        """
        try:
            gateway = resolve_gateway(gateway)
        except ValueError as e:
            raise BadRequestException(str(e))

        async with self._session_factory() as session:
            invoice = await session.get(Invoice, invoice_id)
            if not invoice:
                raise ResourceNotFoundException(f"Invoice with ID {invoice_id} not found")
            if invoice.status == InvoiceStatus.PAID.value:
                raise ConflictException(f"Invoice {invoice.invoice_number} is already paid")
            if invoice.status == InvoiceStatus.CANCELLED.value:
                raise BadRequestException(f"Invoice {invoice.invoice_number} is cancelled")

            amount_due = Decimal(invoice.total_amount) - Decimal(invoice.amount_paid or 0)
            invoice_number = invoice.invoice_number

        if amount_due <= 0:
            raise ConflictException(f"Invoice {invoice_number} has no outstanding amount")

        provider = self._provider(gateway)
        callback_url = f"{settings.BACKEND_URL}/payments/{gateway_slug(gateway)}/callback"

        try:
            result = await provider.initiate_checkout(
                amount=amount_due,
                reference=invoice_number,
                return_url=callback_url,
                client_ip=client_ip,
            )
        except PaymentGatewayError as e:
            self._error_handler.logger.error(
                f"Payment initiation error ({gateway.value}) for invoice {invoice_number}: {e.message}",
                extra=error_context(e),
            )
            raise

        request_context = {
            "invoiceId": invoice_id,
            "invoiceNumber": invoice_number,
            "amount": format_amount(amount_due),
        }
        if result.get("order_id"):
            request_context["nagadOrderId"] = result["order_id"]

        await self._logs.record(
            gateway,
            result["correlation_id"],
            GatewayLogStatus.INITIATED,
            request=request_context,
            response=result.get("response"),
        )

        self._error_handler.logger.info(
            f"{gateway.value} payment initiated for invoice {invoice_number}: {result['correlation_id']}"
        )
        return {
            "redirect_url": result["redirect_url"],
            "correlation_id": result["correlation_id"],
        }

    async def handle_callback(
        self, gateway: Union[Gateway, str], query_params: Mapping[str, Any]
    ) -> CallbackResult:
        """
        Finalize a payment after the customer returns from the gateway.

        Never raises for gateway failures; the result carries the reason so
        the caller can redirect the customer.
        """
        try:
            gateway = resolve_gateway(gateway)
        except ValueError as e:
            return CallbackResult(success=False, gateway=str(gateway), message=str(e))

        if gateway == Gateway.BKASH:
            return await self._handle_bkash_callback(query_params)
        return await self._handle_nagad_callback(query_params)

    async def _handle_bkash_callback(self, query_params: Mapping[str, Any]) -> CallbackResult:
        slug = gateway_slug(Gateway.BKASH)
        payment_id = query_params.get("paymentID")
        status = query_params.get("status")
        self._error_handler.logger.info(f"bKash callback received for ID: {payment_id}, status: {status}")

        if not payment_id:
            return CallbackResult(success=False, gateway=slug, message="Missing PaymentID")

        log = await self._logs.find_latest(gateway=Gateway.BKASH, correlation_id=payment_id)
        if not log:
            self._error_handler.logger.error(f"bKash log not found for paymentID: {payment_id}")
            return CallbackResult(success=False, gateway=slug, message="Invalid Session")

        context = parse_payload(log.request_data) or {}
        invoice_id = context.get("invoiceId")
        if invoice_id is None or context.get("amount") is None:
            self._error_handler.logger.error(f"Initiation log #{log.id} has no invoice context")
            return CallbackResult(success=False, gateway=slug, message="Invalid Session")

        if is_authoritative_success(log):
            response = parse_payload(log.response_data) or {}
            self._error_handler.logger.info(f"bKash payment already successful for ID: {payment_id}")
            return CallbackResult(
                success=True,
                gateway=slug,
                invoice_id=invoice_id,
                trx_id=response.get("trxID") or response.get("transactionReference"),
            )

        if status in BKASH_FAILED_CALLBACK_STATUSES:
            self._error_handler.logger.warning(f"bKash payment {status} for invoice {invoice_id}")
            await self._logs.update_status(log.id, GatewayLogStatus.FAILED, {"callbackStatus": status})
            return CallbackResult(
                success=False, gateway=slug, invoice_id=invoice_id, message=f"Payment {status}"
            )

        provider: BkashProvider = self._provider(Gateway.BKASH)
        try:
            result = await provider.execute_or_recover(payment_id)
        except PaymentGatewayError as e:
            self._error_handler.logger.error(
                f"bKash execution failed for {payment_id}: {e.message}", extra=error_context(e)
            )
            await self._logs.update_status(log.id, GatewayLogStatus.FAILED, {"error": e.message})
            return CallbackResult(success=False, gateway=slug, invoice_id=invoice_id, message=e.message)

        await self.record_payment(
            invoice_id, Decimal(str(context.get("amount"))), Gateway.BKASH, result["trxID"]
        )
        await self._logs.update_status(log.id, GatewayLogStatus.SUCCESS, result)

        self._error_handler.logger.info(
            f"bKash payment success recorded for invoice {invoice_id}, TrxID: {result['trxID']}"
        )
        return CallbackResult(success=True, gateway=slug, invoice_id=invoice_id, trx_id=result["trxID"])

    async def _handle_nagad_callback(self, query_params: Mapping[str, Any]) -> CallbackResult:
        slug = gateway_slug(Gateway.NAGAD)
        payment_ref_id = query_params.get("payment_ref_id")
        status = query_params.get("status")
        self._error_handler.logger.info(f"Nagad callback received for ref: {payment_ref_id}, status: {status}")

        if not payment_ref_id:
            return CallbackResult(success=False, gateway=slug, message="Missing payment reference")

        log = await self._logs.find_latest(gateway=Gateway.NAGAD, correlation_id=payment_ref_id)
        if not log:
            self._error_handler.logger.error(f"Nagad log not found for ref: {payment_ref_id}")
            return CallbackResult(success=False, gateway=slug, message="Invalid Session")

        context = parse_payload(log.request_data) or {}
        invoice_id = context.get("invoiceId")
        if invoice_id is None or context.get("amount") is None:
            self._error_handler.logger.error(f"Initiation log #{log.id} has no invoice context")
            return CallbackResult(success=False, gateway=slug, message="Invalid Session")

        if is_authoritative_success(log):
            stored = parse_payload(log.response_data) or {}
            if stored.get("amountMismatch"):
                return CallbackResult(
                    success=False, gateway=slug, invoice_id=invoice_id, message=stored.get("message")
                )
            return CallbackResult(success=True, gateway=slug, invoice_id=invoice_id, trx_id=payment_ref_id)

        provider: NagadProvider = self._provider(Gateway.NAGAD)
        try:
            verification = await provider.verify(payment_ref_id)
        except PaymentGatewayError as e:
            self._error_handler.logger.error(
                f"Nagad verification failed for {payment_ref_id}: {e.message}", extra=error_context(e)
            )
            await self._logs.update_status(log.id, GatewayLogStatus.FAILED, {"error": e.message})
            return CallbackResult(success=False, gateway=slug, invoice_id=invoice_id, message=e.message)

        response: Dict[str, Any] = {
            "verificationResult": verification,
            "callbackStatus": status,
            "nagadOrderId": context.get("nagadOrderId"),
        }

        if not provider.is_verified(verification):
            await self._logs.update_status(log.id, GatewayLogStatus.FAILED, response)
            return CallbackResult(
                success=False,
                gateway=slug,
                invoice_id=invoice_id,
                message=extract_remote_message(verification, "Payment was not verified by Nagad"),
            )

        expected = Decimal(str(context.get("amount")))
        if not self._amount_matches(expected, verification.get("amount")):
            message = "Paid amount does not match the invoice. Please contact support."
            self._error_handler.logger.warning(
                f"Amount mismatch for invoice {invoice_id}. Expected: {expected}, Got: {verification.get('amount')}"
            )
            response.update({"amountMismatch": True, "message": message})
            await self._logs.update_status(log.id, GatewayLogStatus.SUCCESS, response)
            return CallbackResult(success=False, gateway=slug, invoice_id=invoice_id, message=message)

        await self.record_payment(invoice_id, expected, Gateway.NAGAD, payment_ref_id)
        await self._logs.update_status(log.id, GatewayLogStatus.SUCCESS, response)

        self._error_handler.logger.info(f"Nagad payment success recorded for invoice {invoice_id}")
        return CallbackResult(success=True, gateway=slug, invoice_id=invoice_id, trx_id=payment_ref_id)

    @staticmethod
    def _amount_matches(expected: Decimal, reported: Any) -> bool:
        try:
            return Decimal(str(reported)).quantize(Decimal("0.01")) == expected.quantize(Decimal("0.01"))
        except (InvalidOperation, TypeError, ValueError):
            return False

    @handle_service_errors("recording payment")
    async def record_payment(
        self,
        invoice_id: int,
        amount: Decimal,
        gateway: Gateway,
        transaction_id: str,
    ) -> int:
        """
        Record a successful payment against an invoice.

        Idempotent on (gateway, transaction_id): a duplicate callback returns
        the existing transaction without touching the invoice again.
        """
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(Transaction).filter(
                        Transaction.gateway == gateway.value,
                        Transaction.transaction_id == transaction_id,
                        Transaction.status == TransactionStatus.SUCCESS.value,
                    )
                )
                existing = result.scalars().first()
                if existing:
                    self._error_handler.logger.info(
                        f"Payment {transaction_id} ({gateway.value}) already recorded as transaction #{existing.id}"
                    )
                    return existing.id

                invoice = await session.get(Invoice, invoice_id)
                if not invoice:
                    raise ResourceNotFoundException(f"Invoice with ID {invoice_id} not found")

                transaction = Transaction(
                    invoice_id=invoice.id,
                    gateway=gateway.value,
                    transaction_id=transaction_id,
                    amount=amount,
                    status=TransactionStatus.SUCCESS.value,
                )
                session.add(transaction)

                invoice.amount_paid = Decimal(invoice.amount_paid or 0) + amount
                invoice.status = (
                    InvoiceStatus.PAID.value
                    if invoice.amount_paid >= Decimal(invoice.total_amount)
                    else InvoiceStatus.PARTIALLY_PAID.value
                )
                await session.flush()
                transaction_pk = transaction.id

        return transaction_pk

    async def repair_refunds(
        self,
        gateway: Union[Gateway, str],
        refund_id: Optional[int] = None,
        dry_run: bool = False,
    ) -> RepairSummary:
        try:
            gateway = resolve_gateway(gateway)
        except ValueError as e:
            raise BadRequestException(str(e))
        return await self._reconciliation.repair_refunds(gateway, refund_id=refund_id, dry_run=dry_run)
