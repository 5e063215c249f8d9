import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

import httpx

from src.api.payments.credentials import CredentialStore, NagadCredentials
from src.api.payments.exceptions import DecryptionError
from src.api.payments.providers.base import BasePaymentProvider, format_amount
from src.config.constants import (
    DEFAULT_CLIENT_IP,
    NAGAD_API_VERSION,
    NAGAD_CHALLENGE_LENGTH,
    NAGAD_CLIENT_TYPE,
    NAGAD_CURRENCY_CODE,
    NAGAD_ORDER_ID_MAX_LENGTH,
    NAGAD_TIMEZONE,
    NAGAD_VERIFIED_STATUS,
    NAGAD_VERIFIED_STATUS_CODE,
    Gateway,
)
from src.config.settings import settings
from src.shared.rsa_crypto import RSACryptoService, rsa_crypto_service

_NON_ALPHANUMERIC_RE = re.compile(r"[^A-Za-z0-9]")


def bangladesh_datetime(now: Optional[datetime] = None) -> str:
    """
    Time in Asia/Dhaka formatted as YYYYMMDDHHmmss (defaults to now).
    Naive datetimes are read as UTC, which is how the database hands them back.
    """
    now = now or datetime.now(tz=ZoneInfo(NAGAD_TIMEZONE))
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(NAGAD_TIMEZONE)).strftime("%Y%m%d%H%M%S")


def _dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"))


@dataclass
class NagadInitialization:
    """Result of the first checkout step"""

    order_id: str
    sensitive_data: str
    datetime: str
    request: Dict[str, Any]
    response: Dict[str, Any]


class NagadProvider(BasePaymentProvider):
    """
    Nagad checkout (RSA challenge-response protocol).

    Step 1 (initialize) sends a signed, encrypted challenge and receives an
    encrypted blob holding the payment reference and the challenge to reuse.
    Step 2 (complete) sends the order details signed with that same challenge
    and returns the redirect URL. Step 3 (verify) confirms the payment after
    the customer comes back.
    """

    gateway = Gateway.NAGAD

    def __init__(
        self,
        credential_store: Optional[CredentialStore] = None,
        crypto: Optional[RSACryptoService] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(transport=transport, timeout=timeout)
        self._credential_store = credential_store or CredentialStore()
        self._crypto = crypto or rsa_crypto_service

    def get_headers(self, client_ip: Optional[str] = None) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-KM-Api-Version": NAGAD_API_VERSION,
            "X-KM-IP-V4": client_ip or DEFAULT_CLIENT_IP,
            "X-KM-Client-Type": NAGAD_CLIENT_TYPE,
        }

    def build_order_id(self, invoice_ref: Any) -> str:
        """
        Nagad order ids must be alphanumeric and at most 20 characters.

        Preferred format is ``INV{ref}{suffix}``; long references drop the
        prefix, and anything still too long keeps the tail of the reference.
        """
        reference = _NON_ALPHANUMERIC_RE.sub("", str(invoice_ref))
        suffix = self._crypto.generate_order_suffix()

        order_id = f"INV{reference}{suffix}"
        if len(order_id) <= NAGAD_ORDER_ID_MAX_LENGTH:
            return order_id

        self._error_handler.logger.warning(
            f"Nagad order id {order_id} exceeds {NAGAD_ORDER_ID_MAX_LENGTH} characters, using short format"
        )
        order_id = f"{reference}{suffix}"
        if len(order_id) > NAGAD_ORDER_ID_MAX_LENGTH:
            keep = NAGAD_ORDER_ID_MAX_LENGTH - len(suffix)
            order_id = f"{reference[-keep:]}{suffix}"
        return order_id

    def _seal(self, sensitive: Dict[str, Any], credentials: NagadCredentials) -> Dict[str, str]:
        """Encrypt for Nagad and sign the same plaintext with the merchant key."""
        plaintext = _dumps(sensitive)
        return {
            "sensitiveData": self._crypto.encrypt_with_public_key(plaintext, credentials.public_key),
            "signature": self._crypto.sign_data(plaintext, credentials.private_key),
        }

    def _open(self, blob: str, credentials: NagadCredentials) -> Dict[str, Any]:
        """Decrypt a Nagad response blob into its JSON document."""
        plaintext = self._crypto.decrypt_with_private_key(blob, credentials.private_key)
        try:
            document = json.loads(plaintext)
        except ValueError as e:
            raise DecryptionError(
                "Decrypted Nagad payload is not valid JSON", original_error=e, gateway=self.gateway.value
            )
        if not isinstance(document, dict):
            raise DecryptionError("Decrypted Nagad payload is not a JSON object", gateway=self.gateway.value)
        return document

    async def initialize(
        self, amount: Decimal, invoice_ref: Any, client_ip: Optional[str] = None
    ) -> NagadInitialization:
        credentials = await self._credential_store.resolve_nagad()
        order_id = self.build_order_id(invoice_ref)
        timestamp = bangladesh_datetime()

        sensitive = {
            "merchantId": credentials.merchant_id,
            "datetime": timestamp,
            "orderId": order_id,
            "challenge": self._crypto.generate_random_string(NAGAD_CHALLENGE_LENGTH),
        }
        body = {"dateTime": timestamp, **self._seal(sensitive, credentials)}

        self._error_handler.logger.info(
            f"Initializing Nagad payment {order_id} for {format_amount(amount)} BDT"
        )
        data = await self._request(
            "POST",
            f"{credentials.base_url}check-out/initialize/{credentials.merchant_id}/{order_id}",
            operation="initialize",
            json_body=body,
            headers=self.get_headers(client_ip),
            params={"locale": "EN"},
        )

        if not data.get("sensitiveData"):
            raise self._protocol_error(data, "Nagad initialization returned no sensitive data")

        return NagadInitialization(
            order_id=order_id,
            sensitive_data=data["sensitiveData"],
            datetime=timestamp,
            request={"orderId": order_id, "dateTime": timestamp, "merchantId": credentials.merchant_id},
            response=data,
        )

    async def complete(
        self,
        amount: Decimal,
        order_id: str,
        sensitive_data: str,
        original_order_ref: Any,
        client_ip: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Finish checkout using the challenge issued by ``initialize``.

        Raises:
            DecryptionError: the initialization blob could not be decrypted
            RemoteProtocolError: the blob lacks the reference or challenge, or
                Nagad returned no redirect URL
        """
        credentials = await self._credential_store.resolve_nagad()

        decrypted = self._open(sensitive_data, credentials)
        payment_reference_id = decrypted.get("paymentReferenceId")
        challenge = decrypted.get("challenge")
        if not payment_reference_id or not challenge:
            raise self._protocol_error(
                {}, "Invalid response from Nagad initialization: missing payment reference or challenge"
            )

        sensitive = {
            "merchantId": credentials.merchant_id,
            "orderId": order_id,
            "currencyCode": NAGAD_CURRENCY_CODE,
            "amount": format_amount(amount),
            "challenge": challenge,
        }
        body = {
            **self._seal(sensitive, credentials),
            "merchantCallbackURL": callback_url or f"{settings.FRONTEND_URL}/payment/nagad-callback",
            "additionalMerchantInfo": {
                "order_no": str(original_order_ref),
                "serviceLogoURL": settings.BRAND_LOGO_URL or "",
            },
        }

        self._error_handler.logger.info(f"Completing Nagad payment for Ref: {payment_reference_id}")
        data = await self._request(
            "POST",
            f"{credentials.base_url}check-out/complete/{payment_reference_id}",
            operation="complete",
            json_body=body,
            headers=self.get_headers(client_ip),
        )

        if not data.get("callBackUrl"):
            raise self._protocol_error(data, "Nagad completion returned no redirect URL")

        return {**data, "paymentReferenceId": payment_reference_id}

    async def initiate_checkout(
        self,
        amount: Decimal,
        reference: str,
        return_url: str,
        client_ip: Optional[str] = None,
        **kwargs,
    ) -> Dict[str, Any]:
        init = await self.initialize(amount, reference, client_ip)
        data = await self.complete(
            amount,
            init.order_id,
            init.sensitive_data,
            reference,
            client_ip=client_ip,
            callback_url=return_url,
        )
        return {
            "redirect_url": data["callBackUrl"],
            "correlation_id": data["paymentReferenceId"],
            "order_id": init.order_id,
            "request": {**init.request, "amount": format_amount(amount), "invoiceRef": str(reference)},
            "response": data,
        }

    async def verify(self, payment_reference_id: str) -> Dict[str, Any]:
        credentials = await self._credential_store.resolve_nagad()
        self._error_handler.logger.info(f"Verifying Nagad payment for Ref: {payment_reference_id}")
        return await self._request(
            "GET",
            f"{credentials.base_url}verify/payment/{payment_reference_id}",
            operation="verify",
            headers={"X-KM-Api-Version": NAGAD_API_VERSION},
        )

    async def verify_transaction(self, reference: str, **kwargs) -> Dict[str, Any]:
        return await self.verify(reference)

    @staticmethod
    def is_verified(payload: Optional[Dict[str, Any]]) -> bool:
        if not isinstance(payload, dict):
            return False
        return (
            payload.get("status") == NAGAD_VERIFIED_STATUS
            and str(payload.get("statusCode")) == NAGAD_VERIFIED_STATUS_CODE
        )

    async def refund_payment(
        self,
        payment_ref_id: str,
        amount: Decimal,
        gateway_order_id: str,
        reason: str = "Customer refund",
        original_request_date: Optional[str] = None,
        original_amount: Optional[Decimal] = None,
        client_ip: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Cancel (refund) a verified purchase.

        Returns:
            Dict with the plaintext ``request`` and the gateway ``response``;
            an encrypted response body is decrypted into ``response["decrypted"]``.
        """
        credentials = await self._credential_store.resolve_nagad()

        sensitive = {
            "merchantId": credentials.merchant_id,
            "originalRequestDate": original_request_date or bangladesh_datetime()[:8],
            "originalAmount": format_amount(original_amount if original_amount is not None else amount),
            "cancelAmount": format_amount(amount),
            "referenceNo": gateway_order_id,
            "referenceMessage": reason,
        }

        self._error_handler.logger.info(
            f"Refunding Nagad payment {payment_ref_id} (order {gateway_order_id}, {sensitive['cancelAmount']} BDT)"
        )
        data = await self._request(
            "POST",
            f"{credentials.base_url}purchase/cancel",
            operation="refund",
            json_body=self._seal(sensitive, credentials),
            headers=self.get_headers(client_ip),
            params={"paymentRefId": payment_ref_id},
        )

        result = dict(data)
        outcome = data
        if data.get("sensitiveData"):
            outcome = self._open(data["sensitiveData"], credentials)
            result["decrypted"] = outcome

        if outcome.get("status") != NAGAD_VERIFIED_STATUS:
            raise self._protocol_error(outcome, "Nagad refund failed")

        return {
            "request": {**sensitive, "paymentRefId": payment_ref_id},
            "response": result,
        }
