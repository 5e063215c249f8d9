import json
from abc import ABC, abstractmethod
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Union

import httpx

from src.api.payments.exceptions import (
    RemoteProtocolError,
    TransportError,
    extract_remote_code,
    extract_remote_message,
)
from src.api.payments.services.gateway_log_service import is_html_tainted
from src.config.constants import Gateway
from src.config.settings import settings
from src.shared.error_handler import ErrorHandler


def format_amount(amount: Union[Decimal, float, int, str]) -> str:
    """Amounts go over the wire as fixed two-decimal strings."""
    return "{:.2f}".format(
        Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    )


class BasePaymentProvider(ABC):
    """
    Abstract Base Class for all Payment Providers.
    Ensures a consistent interface for the PaymentService and owns the
    outbound HTTP plumbing (timeouts, error classification).
    """

    gateway: Gateway

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self._error_handler = ErrorHandler(self.__class__.__module__)
        self._transport = transport
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        return self._timeout if self._timeout is not None else settings.GATEWAY_HTTP_TIMEOUT

    @abstractmethod
    async def initiate_checkout(
        self,
        amount: Decimal,
        reference: str,
        return_url: str,
        client_ip: Optional[str] = None,
        **kwargs,
    ) -> Dict[str, Any]:
        """
        Start a payment with the gateway.

        Returns:
            Dict with ``redirect_url``, ``correlation_id`` and the raw
            ``request``/``response`` used for the audit trail.
        """
        pass

    @abstractmethod
    async def verify_transaction(self, reference: str, **kwargs) -> Dict[str, Any]:
        """Read-only status check of a transaction with the gateway."""
        pass

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Perform one gateway call.

        Raises:
            TransportError: timeout, connection failure or non-2xx status
            RemoteProtocolError: 2xx carrying an HTML page or a non-JSON body
        """
        gateway = self.gateway.value
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method, url, json=json_body, headers=headers, params=params
                )
        except httpx.TimeoutException as e:
            self._error_handler.logger.error(f"{gateway} {operation} timed out after {self.timeout}s")
            raise TransportError(
                f"{gateway} {operation} timed out after {self.timeout}s",
                original_error=e,
                gateway=gateway,
            )
        except httpx.HTTPError as e:
            self._error_handler.logger.error(f"{gateway} {operation} request failed: {e}")
            raise TransportError(
                f"{gateway} {operation} request failed", original_error=e, gateway=gateway
            )

        body_text = response.text
        payload = self._parse_json(body_text)

        if not response.is_success:
            self._error_handler.logger.error(
                f"{gateway} {operation} failed: HTTP {response.status_code} - {body_text[:500]}"
            )
            raise TransportError(
                extract_remote_message(payload, f"{gateway} {operation} failed with HTTP {response.status_code}"),
                http_status=response.status_code,
                payload=payload if payload is not None else body_text[:2000],
                gateway=gateway,
            )

        if is_html_tainted(body_text):
            self._error_handler.logger.error(
                f"{gateway} {operation} returned an HTML page with HTTP {response.status_code}"
            )
            raise RemoteProtocolError(
                f"{gateway} {operation} returned an HTML error page",
                payload=body_text[:2000],
                http_status=response.status_code,
                gateway=gateway,
            )

        if not isinstance(payload, dict):
            raise RemoteProtocolError(
                f"{gateway} {operation} returned an unreadable response",
                payload=body_text[:2000],
                http_status=response.status_code,
                gateway=gateway,
            )

        return payload

    @staticmethod
    def _parse_json(body_text: str) -> Any:
        if not body_text:
            return None
        try:
            return json.loads(body_text)
        except ValueError:
            return None

    def _protocol_error(self, payload: Dict[str, Any], fallback: str) -> RemoteProtocolError:
        """Failure reported inside a successful HTTP response."""
        self._error_handler.logger.error(f"{fallback}: {payload}")
        return RemoteProtocolError(
            extract_remote_message(payload, fallback),
            payload=payload,
            status_code=extract_remote_code(payload),
            gateway=self.gateway.value,
        )
