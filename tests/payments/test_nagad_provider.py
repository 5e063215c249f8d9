import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from src.api.payments.exceptions import DecryptionError, RemoteProtocolError
from src.api.payments.providers.nagad import NagadProvider, bangladesh_datetime
from src.shared.rsa_crypto import RSACryptoService
from tests.gateway_stub import request_json

MERCHANT_ID = "683002007104225"
CHALLENGE = "nagadIssuedChallenge0123456789abcdefghij"


class FixedSuffixCrypto(RSACryptoService):
    def generate_order_suffix(self) -> str:
        return "4321"


@pytest_asyncio.fixture
async def provider(nagad_settings, credential_store, gateway_stub) -> NagadProvider:
    return NagadProvider(
        credential_store=credential_store,
        crypto=FixedSuffixCrypto(),
        transport=gateway_stub.transport,
        timeout=5,
    )


@pytest.fixture
def nagad_gateway(gateway_stub, merchant_keys, nagad_keys):
    """Plays Nagad's side of the challenge exchange."""
    crypto = RSACryptoService()
    seen = {}

    def initialize(request: httpx.Request) -> httpx.Response:
        body = request_json(request)
        plaintext = nagad_keys.decrypt(body["sensitiveData"])
        assert crypto.verify_signature(plaintext, body["signature"], merchant_keys.public_body)
        seen["initialize"] = json.loads(plaintext)
        seen["locale"] = request.url.params.get("locale")

        issued = json.dumps({"paymentReferenceId": "REF123", "challenge": CHALLENGE, "acceptDateTime": "x"})
        return httpx.Response(
            200,
            json={"sensitiveData": merchant_keys.encrypt(issued), "signature": "ignored"},
        )

    def complete(request: httpx.Request) -> httpx.Response:
        body = request_json(request)
        plaintext = nagad_keys.decrypt(body["sensitiveData"])
        assert crypto.verify_signature(plaintext, body["signature"], merchant_keys.public_body)
        seen["complete"] = json.loads(plaintext)
        seen["complete_body"] = body
        return httpx.Response(
            200,
            json={"status": "Success", "callBackUrl": "https://sandbox.mynagad.com/pay/REF123"},
        )

    gateway_stub.add("POST", "check-out/initialize", handler=initialize)
    gateway_stub.add("POST", "check-out/complete/REF123", handler=complete)
    return seen


class TestNagadHelpers:
    def test_bangladesh_datetime(self):
        moment = datetime(2024, 1, 31, 20, 15, 30, tzinfo=timezone.utc)

        assert bangladesh_datetime(moment) == "20240201021530"
        assert bangladesh_datetime(moment.replace(tzinfo=None)) == "20240201021530"

    def test_headers(self):
        provider = NagadProvider(credential_store=object())

        assert provider.get_headers("203.0.113.9") == {
            "Content-Type": "application/json",
            "X-KM-Api-Version": "v-0.2.0",
            "X-KM-IP-V4": "203.0.113.9",
            "X-KM-Client-Type": "PC_WEB",
        }
        assert provider.get_headers()["X-KM-IP-V4"] == "103.100.100.100"

    @pytest.mark.parametrize(
        "reference, expected",
        [
            ("INV-1001", "INVINV10014321"),
            ("1001", "INV10014321"),
            ("INVOICE123456789", "INVOICE1234567894321"),
            ("INV-2024-000000123456789", "40000001234567894321"),
        ],
    )
    def test_order_id(self, reference, expected):
        provider = NagadProvider(credential_store=object(), crypto=FixedSuffixCrypto())
        order_id = provider.build_order_id(reference)

        assert order_id.isalnum()
        assert len(order_id) <= 20
        assert order_id.endswith("4321")
        assert order_id == expected


@pytest.mark.asyncio
class TestNagadCheckout:
    async def test_challenge_is_threaded_through(self, provider: NagadProvider, nagad_gateway, gateway_stub):
        result = await provider.initiate_checkout(
            Decimal("250"), "INV-1001", "https://api.example/payments/nagad/callback", client_ip="203.0.113.9"
        )

        assert result["redirect_url"] == "https://sandbox.mynagad.com/pay/REF123"
        assert result["correlation_id"] == "REF123"
        assert result["order_id"] == "INVINV10014321"

        initialize = nagad_gateway["initialize"]
        assert initialize["merchantId"] == MERCHANT_ID
        assert initialize["orderId"] == "INVINV10014321"
        assert len(initialize["challenge"]) == 40
        assert nagad_gateway["locale"] == "EN"

        # The challenge issued by Nagad, not our own, is signed in step two
        assert nagad_gateway["complete"] == {
            "merchantId": MERCHANT_ID,
            "orderId": "INVINV10014321",
            "currencyCode": "050",
            "amount": "250.00",
            "challenge": CHALLENGE,
        }
        body = nagad_gateway["complete_body"]
        assert body["merchantCallbackURL"] == "https://api.example/payments/nagad/callback"
        assert body["additionalMerchantInfo"]["order_no"] == "INV-1001"

        init_request = gateway_stub.calls("check-out/initialize")[0]
        assert init_request.url.path.endswith(f"/check-out/initialize/{MERCHANT_ID}/INVINV10014321")
        assert init_request.headers["X-KM-IP-V4"] == "203.0.113.9"

    async def test_initialize_without_sensitive_data(self, provider: NagadProvider, gateway_stub):
        gateway_stub.add("POST", "check-out/initialize", {"reason": "1001", "message": "Invalid Merchant"})

        with pytest.raises(RemoteProtocolError, match="Invalid Merchant"):
            await provider.initialize(Decimal("10"), "INV-1")

    async def test_initialize_html_page(self, provider: NagadProvider, gateway_stub):
        gateway_stub.add("POST", "check-out/initialize", text="<html><body>Request Rejected</body></html>")

        with pytest.raises(RemoteProtocolError, match="HTML"):
            await provider.initialize(Decimal("10"), "INV-1")

    async def test_complete_rejects_blob_without_challenge(self, provider: NagadProvider, merchant_keys):
        blob = merchant_keys.encrypt(json.dumps({"paymentReferenceId": "REF123"}))

        with pytest.raises(RemoteProtocolError, match="challenge"):
            await provider.complete(Decimal("10"), "INV14321", blob, "INV-1")

    async def test_complete_rejects_undecryptable_blob(self, provider: NagadProvider, nagad_keys):
        # Encrypted for the wrong key
        blob = nagad_keys.encrypt("{}")

        with pytest.raises(DecryptionError):
            await provider.complete(Decimal("10"), "INV14321", blob, "INV-1")


@pytest.mark.asyncio
class TestNagadVerifyAndRefund:
    async def test_verify(self, provider: NagadProvider, gateway_stub):
        gateway_stub.add(
            "GET",
            "verify/payment/REF123",
            {"status": "Success", "statusCode": "000", "amount": "250.00", "orderId": "INVINV10014321"},
        )

        result = await provider.verify("REF123")

        assert provider.is_verified(result)
        request = gateway_stub.requests[0]
        assert request.headers["X-KM-Api-Version"] == "v-0.2.0"
        assert "X-KM-IP-V4" not in request.headers

    @pytest.mark.parametrize(
        "payload",
        [
            {"status": "Success", "statusCode": "001"},
            {"status": "Aborted", "statusCode": "000"},
            None,
        ],
    )
    async def test_is_verified_requires_both_markers(self, payload):
        assert not NagadProvider.is_verified(payload)

    async def test_refund_with_encrypted_response(
        self, provider: NagadProvider, gateway_stub, merchant_keys, nagad_keys
    ):
        seen = {}

        def cancel(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            seen["sensitive"] = json.loads(nagad_keys.decrypt(request_json(request)["sensitiveData"]))
            outcome = json.dumps({"status": "Success", "refundReferenceId": "RR1"})
            return httpx.Response(200, json={"sensitiveData": merchant_keys.encrypt(outcome), "signature": "s"})

        gateway_stub.add("POST", "purchase/cancel", handler=cancel)

        result = await provider.refund_payment(
            "REF123", Decimal("100"), "INVINV10014321", reason="Customer cancelled", original_request_date="20240201"
        )

        assert seen["params"] == {"paymentRefId": "REF123"}
        assert seen["sensitive"] == {
            "merchantId": MERCHANT_ID,
            "originalRequestDate": "20240201",
            "originalAmount": "100.00",
            "cancelAmount": "100.00",
            "referenceNo": "INVINV10014321",
            "referenceMessage": "Customer cancelled",
        }
        assert result["response"]["decrypted"]["refundReferenceId"] == "RR1"
        assert result["request"]["paymentRefId"] == "REF123"

    async def test_refund_rejected(self, provider: NagadProvider, gateway_stub):
        gateway_stub.add("POST", "purchase/cancel", {"status": "Failed", "message": "Refund window closed"})

        with pytest.raises(RemoteProtocolError, match="Refund window closed"):
            await provider.refund_payment("REF123", Decimal("100"), "INVINV10014321")
