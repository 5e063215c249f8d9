import json
from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy import select

from src.api.payments.providers.bkash import BkashProvider
from src.api.payments.providers.nagad import NagadProvider
from src.api.payments.services.gateway_log_service import GatewayLogService, parse_payload
from src.api.payments.services.reconciliation_service import (
    NagadProofMatcher,
    ReconciliationService,
)
from src.config.constants import Gateway, GatewayLogStatus, RefundStatus, RepairOutcome, TransactionStatus
from src.database.models import GatewayLog, Refund
from tests.gateway_stub import request_json

GRANTED = {"id_token": "tok-123", "expires_in": 3600}
BKASH_REFUNDED = {
    "statusCode": "0000",
    "statusMessage": "Successful",
    "originalTrxID": "T1",
    "refundTrxID": "R1",
    "transactionStatus": "Completed",
    "amount": "100.00",
}


@pytest_asyncio.fixture
async def reconciliation(
    session_factory, log_service, credential_store, token_cache, gateway_stub, bkash_settings, nagad_settings
) -> ReconciliationService:
    providers = {
        Gateway.BKASH: BkashProvider(
            credential_store=credential_store, token_cache=token_cache, transport=gateway_stub.transport
        ),
        Gateway.NAGAD: NagadProvider(credential_store=credential_store, transport=gateway_stub.transport),
    }
    return ReconciliationService(session_factory=session_factory, log_service=log_service, providers=providers)


async def record_bkash_payment(log_service: GatewayLogService, payment_id: str = "P1", trx_id: str = "T1") -> int:
    return await log_service.record(
        Gateway.BKASH,
        payment_id,
        GatewayLogStatus.SUCCESS,
        request={"invoiceId": 1, "invoiceNumber": "INV-2001", "amount": "100.00"},
        response={"paymentID": payment_id, "trxID": trx_id, "transactionStatus": "Completed", "statusCode": "0000"},
    )


@pytest.mark.asyncio
class TestBkashReconciliation:
    async def test_unproven_refund_is_replayed_once(
        self, reconciliation: ReconciliationService, log_service, gateway_stub, make_completed_refund
    ):
        refund_id = await make_completed_refund(Gateway.BKASH.value, "T1", "100.00")
        payment_log_id = await record_bkash_payment(log_service)
        gateway_stub.add("POST", "token/grant", GRANTED)
        gateway_stub.add("POST", "payment/refund", BKASH_REFUNDED)

        summary = await reconciliation.repair_refunds("bkash")

        assert (summary.checked, summary.repaired) == (1, 1)
        outcome = summary.outcomes[0]
        assert outcome.refund_id == refund_id
        assert outcome.outcome == RepairOutcome.REPAIRED

        refund_request = request_json(gateway_stub.calls("payment/refund")[0])
        assert refund_request["paymentID"] == "P1"
        assert refund_request["trxID"] == "T1"
        assert refund_request["amount"] == "100.00"

        repair_log = await log_service.get(outcome.repair_log_id)
        assert repair_log.transaction_id == "R1"
        assert repair_log.status == GatewayLogStatus.SUCCESS.value
        repair_request = parse_payload(repair_log.request_data)
        assert repair_request["type"] == "REFUND"
        assert repair_request["originalPaymentID"] == "P1"
        assert repair_request["originalTrxID"] == "T1"
        assert repair_request["refundAmount"] == "100.00"

        # The original payment log is never rewritten
        assert (await log_service.get(payment_log_id)).transaction_id == "P1"

        second = await reconciliation.repair_refunds(Gateway.BKASH)
        assert (second.checked, second.skipped, second.repaired) == (1, 1, 0)
        assert len(gateway_stub.calls("payment/refund")) == 1

    async def test_html_success_log_is_not_proof(
        self, reconciliation: ReconciliationService, log_service, gateway_stub, make_completed_refund
    ):
        await make_completed_refund(Gateway.BKASH.value, "T1", "100.00")
        await record_bkash_payment(log_service)
        await log_service.record(
            Gateway.BKASH,
            "T1",
            GatewayLogStatus.SUCCESS,
            request={"type": "REFUND", "originalTrxID": "T1"},
            response="<html>Error 500</html>",
        )
        gateway_stub.add("POST", "token/grant", GRANTED)
        gateway_stub.add("POST", "payment/refund", BKASH_REFUNDED)

        summary = await reconciliation.repair_refunds(Gateway.BKASH)

        assert summary.repaired == 1
        assert len(gateway_stub.calls("payment/refund")) == 1

    async def test_existing_proof_is_skipped(
        self, reconciliation: ReconciliationService, log_service, gateway_stub, make_completed_refund
    ):
        await make_completed_refund(Gateway.BKASH.value, "T1", "100.00")
        await record_bkash_payment(log_service)
        await log_service.record(
            Gateway.BKASH,
            "R1",
            GatewayLogStatus.SUCCESS,
            request={"type": "REFUND", "originalPaymentID": "P1", "refundAmount": "100.00"},
            response=BKASH_REFUNDED,
        )

        summary = await reconciliation.repair_refunds(Gateway.BKASH)

        assert summary.skipped == 1
        assert gateway_stub.requests == []

    @pytest.mark.parametrize(
        "payment_response",
        [
            None,
            {"paymentID": None, "trxID": "T1"},
        ],
    )
    async def test_missing_payment_data_needs_manual_refund(
        self, reconciliation: ReconciliationService, log_service, gateway_stub, make_completed_refund, payment_response
    ):
        await make_completed_refund(Gateway.BKASH.value, "T1", "100.00")
        if payment_response is not None:
            await log_service.record(Gateway.BKASH, "P1", GatewayLogStatus.SUCCESS, response=payment_response)

        summary = await reconciliation.repair_refunds(Gateway.BKASH)

        assert summary.manual_intervention_needed == 1
        assert summary.outcomes[0].outcome == RepairOutcome.MANUAL_INTERVENTION
        assert gateway_stub.requests == []

    async def test_failed_replay_keeps_refund_a_candidate(
        self, reconciliation: ReconciliationService, log_service, gateway_stub, make_completed_refund, session_factory
    ):
        refund_id = await make_completed_refund(Gateway.BKASH.value, "T1", "100.00")
        await record_bkash_payment(log_service)
        gateway_stub.add("POST", "token/grant", GRANTED)
        gateway_stub.add("POST", "payment/refund", {"statusCode": "2071", "statusMessage": "Duplicate for All Transactions"})
        gateway_stub.add("POST", "payment/refund", BKASH_REFUNDED)

        first = await reconciliation.repair_refunds(Gateway.BKASH)

        assert first.failed == 1
        assert first.outcomes[0].detail == "Duplicate for All Transactions"
        failed_logs = await log_service.find(gateway=Gateway.BKASH, status=GatewayLogStatus.FAILED)
        assert len(failed_logs) == 1
        assert '"type":"REFUND"' in failed_logs[0].request_data
        async with session_factory() as session:
            refund = await session.get(Refund, refund_id)
        assert refund.status == RefundStatus.COMPLETED.value

        second = await reconciliation.repair_refunds(Gateway.BKASH)
        assert second.repaired == 1

    async def test_dry_run_has_no_side_effects(
        self, reconciliation: ReconciliationService, log_service, gateway_stub, make_completed_refund, session_factory
    ):
        await make_completed_refund(Gateway.BKASH.value, "T1", "100.00")
        await record_bkash_payment(log_service)

        summary = await reconciliation.repair_refunds(Gateway.BKASH, dry_run=True)

        assert summary.dry_run
        assert summary.would_repair == 1
        assert gateway_stub.requests == []
        async with session_factory() as session:
            logs = (await session.execute(select(GatewayLog))).scalars().all()
        assert len(logs) == 1

    async def test_single_refund_filter(
        self, reconciliation: ReconciliationService, log_service, make_completed_refund
    ):
        await make_completed_refund(Gateway.BKASH.value, "T1", "100.00", invoice_number="INV-A")
        other = await make_completed_refund(Gateway.BKASH.value, "T2", "50.00", invoice_number="INV-B")

        summary = await reconciliation.repair_refunds(Gateway.BKASH, refund_id=other, dry_run=True)

        assert summary.checked == 1
        assert summary.outcomes[0].refund_id == other

    async def test_summary_serializes_outcomes(
        self, reconciliation: ReconciliationService, make_completed_refund
    ):
        await make_completed_refund(Gateway.BKASH.value, "T1", "100.00")

        data = (await reconciliation.repair_refunds(Gateway.BKASH)).to_dict()

        assert data["gateway"] == "BKASH"
        assert data["outcomes"][0]["outcome"] == "manual_intervention"


@pytest.mark.asyncio
class TestNagadReconciliation:
    async def test_refund_is_replayed_with_recovered_order_id(
        self, reconciliation: ReconciliationService, log_service, gateway_stub, make_completed_refund
    ):
        await make_completed_refund(Gateway.NAGAD.value, "REF123", "250.00")
        await log_service.record(
            Gateway.NAGAD,
            "REF123",
            GatewayLogStatus.SUCCESS,
            request={"invoiceId": 1, "invoiceNumber": "INV-2001", "amount": "250.00"},
            response={
                "verificationResult": {"status": "Success", "statusCode": "000", "orderId": "INVINV20014321"},
                "callbackStatus": "Success",
            },
        )
        gateway_stub.add("POST", "purchase/cancel", {"status": "Success", "message": "Refunded"})

        summary = await reconciliation.repair_refunds("nagad")

        assert summary.repaired == 1
        cancel = gateway_stub.calls("purchase/cancel")[0]
        assert cancel.url.params["paymentRefId"] == "REF123"

        repair_log = await log_service.get(summary.outcomes[0].repair_log_id)
        assert repair_log.transaction_id == "REF-REF123"
        assert parse_payload(repair_log.request_data)["nagadOrderId"] == "INVINV20014321"

        second = await reconciliation.repair_refunds(Gateway.NAGAD)
        assert second.skipped == 1
        assert len(gateway_stub.calls("purchase/cancel")) == 1

    async def test_partial_refund_cancels_against_original_purchase(
        self, reconciliation: ReconciliationService, log_service, gateway_stub, make_completed_refund, nagad_keys
    ):
        # 20:30 UTC on March 1st is already March 2nd in Dhaka
        await make_completed_refund(
            Gateway.NAGAD.value,
            "REF123",
            "250.00",
            refund_amount="100.00",
            paid_at=datetime(2026, 3, 1, 20, 30),
        )
        await log_service.record(
            Gateway.NAGAD,
            "REF123",
            GatewayLogStatus.SUCCESS,
            response={"verificationResult": {"status": "Success", "orderId": "INVINV20014321"}},
        )
        gateway_stub.add("POST", "purchase/cancel", {"status": "Success"})

        summary = await reconciliation.repair_refunds(Gateway.NAGAD)

        assert summary.repaired == 1
        body = request_json(gateway_stub.calls("purchase/cancel")[0])
        envelope = json.loads(nagad_keys.decrypt(body["sensitiveData"]))
        assert envelope["originalAmount"] == "250.00"
        assert envelope["cancelAmount"] == "100.00"
        assert envelope["originalRequestDate"] == "20260302"
        assert envelope["referenceNo"] == "INVINV20014321"

    async def test_refund_on_unsettled_payment_is_not_a_candidate(
        self, reconciliation: ReconciliationService, make_completed_refund, gateway_stub
    ):
        await make_completed_refund(
            Gateway.NAGAD.value, "REF123", "250.00", transaction_status=TransactionStatus.FAILED.value
        )

        summary = await reconciliation.repair_refunds(Gateway.NAGAD)

        assert summary.checked == 0
        assert gateway_stub.requests == []

    async def test_html_proof_is_ignored(
        self, reconciliation: ReconciliationService, log_service, gateway_stub, make_completed_refund
    ):
        await make_completed_refund(Gateway.NAGAD.value, "REF123", "250.00")
        await log_service.record(
            Gateway.NAGAD, "REF123", GatewayLogStatus.SUCCESS, response={"nagadOrderId": "INV20014321"}
        )
        await log_service.record(
            Gateway.NAGAD, "REF-REF123", GatewayLogStatus.SUCCESS, response="<!DOCTYPE html><html>503</html>"
        )
        gateway_stub.add("POST", "purchase/cancel", {"status": "Success"})

        summary = await reconciliation.repair_refunds(Gateway.NAGAD)

        assert summary.repaired == 1

    async def test_missing_order_id(
        self, reconciliation: ReconciliationService, log_service, gateway_stub, make_completed_refund
    ):
        await make_completed_refund(Gateway.NAGAD.value, "REF123", "250.00")
        await log_service.record(Gateway.NAGAD, "REF123", GatewayLogStatus.SUCCESS, response={"status": "Success"})

        summary = await reconciliation.repair_refunds(Gateway.NAGAD)

        assert summary.manual_intervention_needed == 1
        assert gateway_stub.requests == []

    @pytest.mark.parametrize(
        "response, expected",
        [
            ({"verificationResult": {"orderId": "A1"}}, "A1"),
            ({"verificationResult": {"nagadOrderId": "A2"}}, "A2"),
            ({"verificationResult": {}, "nagadOrderId": "A3"}, "A3"),
            ({"orderId": "A4"}, "A4"),
            ("not a dict", None),
        ],
    )
    async def test_order_id_extraction(self, response, expected):
        assert NagadProofMatcher.extract_order_id(response) == expected
