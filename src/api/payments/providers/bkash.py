import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import httpx

from src.api.payments.credentials import BkashCredentials, CredentialStore
from src.api.payments.exceptions import (
    PaymentGatewayError,
    RemoteProtocolError,
    TransportError,
    extract_remote_code,
    extract_remote_message,
)
from src.api.payments.providers.base import BasePaymentProvider, format_amount
from src.api.payments.token_cache import TokenCache
from src.config.constants import (
    BKASH_ALREADY_COMPLETED_CODE,
    BKASH_CURRENCY,
    BKASH_INTENT,
    BKASH_SUCCESS_STATUS_CODE,
    BKASH_TOKENIZED_CAPTURE_MODE,
    TOKEN_EXPIRY_SAFETY_MARGIN_SECONDS,
    BkashMode,
    Gateway,
)

BKASH_COMPLETED_TRANSACTION_STATUS = "Completed"
BKASH_STANDARD_SUCCESS_MESSAGES = ("Successful", "Success")


@dataclass
class TokenAttempt:
    """Outcome of one token grant against one endpoint family"""

    mode: BkashMode
    token_data: Optional[Dict[str, Any]] = None
    error: Optional[PaymentGatewayError] = None

    @property
    def token(self) -> Optional[str]:
        return (self.token_data or {}).get("id_token")

    @property
    def payload(self) -> Any:
        if self.error is not None:
            return getattr(self.error, "payload", None)
        return self.token_data

    @property
    def is_ambiguous(self) -> bool:
        """
        True when the rejection looks like "wrong integration mode" rather
        than a definite credential problem.

        bKash answers a wrong-mode grant with either ``{"status": "fail"}`` or
        a bare ``{"msg": "Unknown error"}``. The message text is only consulted
        when the payload carries no status code at all.
        """
        if self.token:
            return False
        payload = self.payload
        if not isinstance(payload, dict):
            return False
        if str(payload.get("status", "")).lower() == "fail":
            return True
        if extract_remote_code(payload):
            return False
        return "unknown error" in str(payload.get("msg") or payload.get("message") or "").lower()


@dataclass
class BkashSession:
    """Credentials aligned with the endpoint family that issued the token"""

    credentials: BkashCredentials
    token: str
    headers: Dict[str, str] = field(default_factory=dict)


class BkashProvider(BasePaymentProvider):
    """
    bKash checkout (tokenized and standard integration modes).

    Every call needs a bearer token from ``token/grant``. Tokens are cached in
    the settings store until shortly before expiry.
    """

    gateway = Gateway.BKASH

    def __init__(
        self,
        credential_store: Optional[CredentialStore] = None,
        token_cache: Optional[TokenCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(transport=transport, timeout=timeout)
        self._credential_store = credential_store or CredentialStore()
        self._token_cache = token_cache or TokenCache()

    # ------------------------------------------------------------------ #
    # Token management
    # ------------------------------------------------------------------ #

    async def get_token(self) -> str:
        session = await self._session()
        return session.token

    async def _session(self) -> BkashSession:
        credentials = await self._credential_store.resolve_bkash()

        cached = await self._token_cache.get(self.gateway.value)
        if cached:
            if cached.mode and cached.mode != credentials.mode.value:
                credentials = credentials.for_mode(BkashMode(cached.mode))
            return self._build_session(credentials, cached.value)

        self._error_handler.logger.info(
            f"Generating new bKash token ({credentials.mode.value} mode)"
        )
        primary = await self._grant_token(credentials)
        if primary.token:
            return await self._store_token(credentials, primary)

        attempts: List[TokenAttempt] = [primary]
        if primary.is_ambiguous:
            alternative_mode = (
                BkashMode.STANDARD if credentials.is_tokenized else BkashMode.TOKENIZED
            )
            self._error_handler.logger.warning(
                f"bKash {credentials.mode.value} token grant was rejected ambiguously; "
                f"retrying once against the {alternative_mode.value} endpoint"
            )
            alternative = credentials.for_mode(alternative_mode)
            secondary = await self._grant_token(alternative)
            if secondary.token:
                self._error_handler.logger.warning(
                    f"bKash token obtained from the {alternative_mode.value} endpoint. "
                    f"Update bkashUsername so the account type is detected as {alternative_mode.value}."
                )
                return await self._store_token(alternative, secondary)
            attempts.append(secondary)

        raise self._token_failure(attempts)

    async def _grant_token(self, credentials: BkashCredentials) -> TokenAttempt:
        attempt = TokenAttempt(mode=credentials.mode)
        try:
            data = await self._request(
                "POST",
                f"{credentials.base_url}token/grant",
                operation="token grant",
                json_body={
                    "app_key": credentials.app_key,
                    "app_secret": credentials.app_secret,
                },
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    "username": credentials.username,
                    "password": credentials.password,
                },
            )
        except (TransportError, RemoteProtocolError) as e:
            attempt.error = e
            return attempt

        attempt.token_data = data
        if not attempt.token:
            attempt.error = RemoteProtocolError(
                extract_remote_message(data, "bKash token grant returned no id_token"),
                payload=data,
                status_code=extract_remote_code(data),
                gateway=self.gateway.value,
            )
        return attempt

    async def _store_token(self, credentials: BkashCredentials, attempt: TokenAttempt) -> BkashSession:
        data = attempt.token_data or {}
        try:
            expires_in = int(data.get("expires_in") or 3600)
        except (TypeError, ValueError):
            expires_in = 3600

        lifetime = max(expires_in - TOKEN_EXPIRY_SAFETY_MARGIN_SECONDS, 0)
        expires_at_ms = int(time.time() * 1000) + lifetime * 1000
        await self._token_cache.put(
            self.gateway.value, attempt.token, expires_at_ms, mode=credentials.mode.value
        )
        self._error_handler.logger.info(f"bKash token generated, valid for {lifetime}s")
        return self._build_session(credentials, attempt.token)

    def _token_failure(self, attempts: List[TokenAttempt]) -> PaymentGatewayError:
        """Surface the most specific remote message from any attempt."""
        message = None
        for attempt in attempts:
            payload = attempt.payload
            if isinstance(payload, dict) and (payload.get("statusMessage") or payload.get("errorMessage")):
                message = extract_remote_message(payload, "")
                break
        if message is None:
            for attempt in attempts:
                candidate = extract_remote_message(attempt.payload, "")
                if candidate:
                    message = candidate
                    break
        if not message and isinstance(attempts[-1].error, TransportError):
            message = attempts[-1].error.message
        if not message:
            message = "Failed to obtain bKash token. Check app key, secret, username and password."

        modes = ", ".join(attempt.mode.value for attempt in attempts)
        self._error_handler.logger.error(f"bKash token grant failed ({modes}): {message}")

        last = attempts[-1].error
        if isinstance(last, TransportError):
            return TransportError(
                message, http_status=last.http_status, payload=last.payload, gateway=self.gateway.value
            )
        return RemoteProtocolError(
            message,
            payload=attempts[-1].payload,
            status_code=extract_remote_code(attempts[-1].payload),
            gateway=self.gateway.value,
        )

    @staticmethod
    def _build_session(credentials: BkashCredentials, token: str) -> BkashSession:
        return BkashSession(
            credentials=credentials,
            token=token,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "Authorization": token,
                "X-APP-Key": credentials.app_key,
            },
        )

    # ------------------------------------------------------------------ #
    # Payments
    # ------------------------------------------------------------------ #

    async def initiate_checkout(
        self,
        amount: Decimal,
        reference: str,
        return_url: str,
        client_ip: Optional[str] = None,
        **kwargs,
    ) -> Dict[str, Any]:
        request, data = await self.create_payment(amount, reference, return_url)
        return {
            "redirect_url": data.get("bkashURL"),
            "correlation_id": data["paymentID"],
            "request": request,
            "response": data,
        }

    async def create_payment(
        self, amount: Decimal, invoice_ref: str, callback_url: str
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Create a checkout with bKash.

        Returns:
            The request payload and the response, with ``paymentID`` normalized
        """
        session = await self._session()
        credentials = session.credentials

        payload: Dict[str, Any] = {
            "amount": format_amount(amount),
            "currency": BKASH_CURRENCY,
            "intent": BKASH_INTENT,
            "merchantInvoiceNumber": str(invoice_ref),
            "callbackURL": callback_url,
        }
        if credentials.is_tokenized:
            payload["mode"] = BKASH_TOKENIZED_CAPTURE_MODE
            payload["payerReference"] = str(invoice_ref)

        endpoint = "create" if credentials.is_tokenized else "payment/create"
        self._error_handler.logger.info(f"Creating bKash payment for invoice {invoice_ref} ({credentials.mode.value})")
        data = await self._request(
            "POST",
            f"{credentials.base_url}{endpoint}",
            operation="create payment",
            json_body=payload,
            headers=session.headers,
        )

        payment_id = data.get("paymentID") or data.get("paymentId")
        if not payment_id:
            raise self._protocol_error(data, "Failed to create bKash payment")

        data["paymentID"] = payment_id
        return payload, data

    async def execute_payment(self, payment_id: str) -> Dict[str, Any]:
        session = await self._session()
        credentials = session.credentials

        if credentials.is_tokenized:
            url = f"{credentials.base_url}execute"
            body: Dict[str, Any] = {"paymentID": payment_id}
        else:
            url = f"{credentials.base_url}payment/execute/{payment_id}"
            body = {}

        self._error_handler.logger.info(f"Executing bKash payment {payment_id}")
        data = await self._request(
            "POST", url, operation="execute payment", json_body=body, headers=session.headers
        )

        if (
            data.get("statusCode") == BKASH_SUCCESS_STATUS_CODE
            or data.get("transactionStatus") == BKASH_COMPLETED_TRANSACTION_STATUS
        ):
            return data
        raise self._protocol_error(data, "bKash payment execution failed")

    async def query_payment(self, payment_id: str) -> Dict[str, Any]:
        session = await self._session()
        credentials = session.credentials

        if credentials.is_tokenized:
            return await self._request(
                "POST",
                f"{credentials.base_url}payment/status",
                operation="query payment",
                json_body={"paymentID": payment_id},
                headers=session.headers,
            )
        return await self._request(
            "GET",
            f"{credentials.base_url}payment/query/{payment_id}",
            operation="query payment",
            headers=session.headers,
        )

    async def verify_transaction(self, reference: str, **kwargs) -> Dict[str, Any]:
        return await self.query_payment(reference)

    @staticmethod
    def is_already_completed(error: PaymentGatewayError) -> bool:
        payload = getattr(error, "payload", None)
        code = extract_remote_code(payload) or getattr(error, "status_code", None)
        if code:
            return str(code) == BKASH_ALREADY_COMPLETED_CODE
        return "already been completed" in error.message.lower()

    async def execute_or_recover(self, payment_id: str) -> Dict[str, Any]:
        """
        Execute a payment, recovering when bKash says it already completed.

        The user may hit the callback twice or bKash may have executed the
        payment on a previous attempt. In that case the current state is
        queried and its transaction reference is used as ``trxID``.
        """
        try:
            return await self.execute_payment(payment_id)
        except (RemoteProtocolError, TransportError) as e:
            if not self.is_already_completed(e):
                raise
            self._error_handler.logger.warning(
                f"bKash payment {payment_id} was already completed; querying its status"
            )

        data = await self.query_payment(payment_id)
        trx_id = data.get("trxID") or data.get("transactionReference")
        if not trx_id:
            raise self._protocol_error(
                data, f"bKash payment {payment_id} is completed but its transaction ID could not be recovered"
            )
        recovered = dict(data)
        recovered["trxID"] = trx_id
        recovered["recoveredViaQuery"] = True
        return recovered

    # ------------------------------------------------------------------ #
    # Refunds
    # ------------------------------------------------------------------ #

    async def refund_payment(
        self,
        payment_id: str,
        amount: Decimal,
        trx_id: str,
        reason: str = "Customer refund",
        sku: str = "refund",
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Request a refund of a completed payment.

        Returns:
            The request payload and the verified success response
        """
        session = await self._session()
        credentials = session.credentials

        payload = {
            "paymentID": payment_id,
            "amount": format_amount(amount),
            "trxID": trx_id,
            "sku": sku,
            "reason": reason,
        }

        self._error_handler.logger.info(f"Refunding bKash transaction {trx_id} ({payload['amount']} BDT)")
        data = await self._request(
            "POST",
            f"{credentials.base_url}payment/refund",
            operation="refund",
            json_body=payload,
            headers=session.headers,
        )

        if self._is_refund_success(data, credentials):
            return payload, data
        raise self._protocol_error(data, "bKash refund failed")

    @staticmethod
    def _is_refund_success(data: Dict[str, Any], credentials: BkashCredentials) -> bool:
        if credentials.is_tokenized:
            return data.get("statusCode") == BKASH_SUCCESS_STATUS_CODE

        marker = (
            data.get("statusMessage") in BKASH_STANDARD_SUCCESS_MESSAGES
            or data.get("statusCode") == BKASH_SUCCESS_STATUS_CODE
        )
        return (
            marker
            and data.get("transactionStatus") == BKASH_COMPLETED_TRANSACTION_STATUS
            and bool(data.get("refundTrxID"))
        )

    async def refund_status(self, payment_id: str, trx_id: str) -> Dict[str, Any]:
        """Read-only refund status lookup."""
        session = await self._session()
        return await self._request(
            "POST",
            f"{session.credentials.base_url}payment/refund",
            operation="refund status",
            json_body={"paymentID": payment_id, "trxID": trx_id},
            headers=session.headers,
        )
