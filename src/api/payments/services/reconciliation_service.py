"""
Refund reconciliation.

A refund marked COMPLETED locally is only trusted once the audit trail holds
a non-HTML SUCCESS log proving the gateway processed it. Refunds without such
proof are replayed once per run using identifiers recovered from the original
payment log. A successful replay appends a new SUCCESS log, which is the proof
the next run finds, so re-running is safe.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from src.api.payments.exceptions import (
    PaymentGatewayError,
    ReconciliationGap,
    error_context,
)
from src.api.payments.providers.base import BasePaymentProvider, format_amount
from src.api.payments.providers.factory import PaymentFactory, resolve_gateway
from src.api.payments.providers.nagad import bangladesh_datetime
from src.api.payments.services.gateway_log_service import (
    GatewayLogService,
    is_authoritative_success,
    is_html_tainted,
    parse_payload,
)
from src.config.constants import (
    REFUND_CORRELATION_PREFIX,
    REFUND_LOG_MARKER,
    Gateway,
    GatewayLogStatus,
    RefundStatus,
    RepairOutcome,
    TransactionStatus,
)
from src.database.connection import AsyncSessionLocal
from src.database.models.gateway_log import GatewayLog
from src.database.models.refund import Refund
from src.database.models.transaction import Transaction
from src.shared.error_handler import ErrorHandler

DEFAULT_REPAIR_REASON = "Stuck refund repair"


@dataclass
class RefundCandidate:
    """Detached snapshot of a COMPLETED refund and its payment"""

    refund_id: int
    transaction_pk: int
    correlation_id: Optional[str]
    amount: Decimal
    reason: Optional[str]
    invoice_number: Optional[str]
    payment_amount: Optional[Decimal] = None
    paid_at: Optional[datetime] = None


@dataclass
class RefundOutcome:
    refund_id: int
    transaction_id: int
    correlation_id: Optional[str]
    outcome: RepairOutcome
    detail: str
    repair_log_id: Optional[int] = None


@dataclass
class RepairSummary:
    gateway: str
    dry_run: bool = False
    checked: int = 0
    repaired: int = 0
    skipped: int = 0
    manual_intervention_needed: int = 0
    failed: int = 0
    would_repair: int = 0
    outcomes: List[RefundOutcome] = field(default_factory=list)

    def add(self, outcome: RefundOutcome) -> None:
        self.checked += 1
        if outcome.outcome == RepairOutcome.REPAIRED:
            self.repaired += 1
        elif outcome.outcome == RepairOutcome.SKIPPED:
            self.skipped += 1
        elif outcome.outcome == RepairOutcome.MANUAL_INTERVENTION:
            self.manual_intervention_needed += 1
        elif outcome.outcome == RepairOutcome.WOULD_REPAIR:
            self.would_repair += 1
        else:
            self.failed += 1
        self.outcomes.append(outcome)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for item in data["outcomes"]:
            item["outcome"] = item["outcome"].value
        return data


class ProofMatcher(ABC):
    """
    Gateway-specific rules for proving a refund and recovering the
    identifiers needed to replay it.
    """

    gateway: Gateway

    def __init__(self, log_service: GatewayLogService):
        self._logs = log_service

    @abstractmethod
    async def find_proof_candidates(self, candidate: RefundCandidate) -> List[GatewayLog]:
        """SUCCESS logs that claim the refund went through, newest first."""
        pass

    @abstractmethod
    async def recover_identifiers(self, candidate: RefundCandidate) -> Dict[str, Any]:
        """
        Identifiers for the replay call.

        Raises:
            ReconciliationGap: the original payment log is missing or incomplete
        """
        pass

    def _original_payment_logs(self, logs: List[GatewayLog]) -> List[GatewayLog]:
        """Drop refund logs and HTML-tainted rows, keeping newest first."""
        return [
            log
            for log in logs
            if REFUND_LOG_MARKER not in (log.request_data or "")
            and not is_html_tainted(log.response_data)
        ]


class BkashProofMatcher(ProofMatcher):
    """
    bKash refund confirmations do not echo a predictable field name, so a
    refund log is matched by the original trxID appearing in its payload.
    """

    gateway = Gateway.BKASH

    async def find_proof_candidates(self, candidate: RefundCandidate) -> List[GatewayLog]:
        trx_id = candidate.correlation_id
        by_response = await self._logs.find(
            gateway=self.gateway,
            status=GatewayLogStatus.SUCCESS,
            request_contains=REFUND_LOG_MARKER,
            response_contains=trx_id,
        )
        by_request = await self._logs.find(
            gateway=self.gateway,
            status=GatewayLogStatus.SUCCESS,
            request_contains=f'"originalTrxID":"{trx_id}"',
        )
        merged = {log.id: log for log in by_response + by_request}
        return sorted(merged.values(), key=lambda log: log.id, reverse=True)

    async def recover_identifiers(self, candidate: RefundCandidate) -> Dict[str, Any]:
        logs = await self._logs.find(
            gateway=self.gateway,
            status=GatewayLogStatus.SUCCESS,
            response_contains=candidate.correlation_id,
        )
        if not logs:
            raise ReconciliationGap(
                f"Could not find original bKash session for transaction #{candidate.transaction_pk}",
                refund_id=candidate.refund_id,
                gateway=self.gateway.value,
            )

        for log in self._original_payment_logs(logs):
            response = parse_payload(log.response_data)
            if not isinstance(response, dict):
                continue
            payment_id = response.get("paymentID") or response.get("paymentId")
            trx_id = response.get("trxID")
            if payment_id and trx_id:
                return {"payment_id": payment_id, "trx_id": trx_id, "source_log_id": log.id}

        raise ReconciliationGap(
            f"Incomplete bKash payment data for transaction #{candidate.transaction_pk}",
            refund_id=candidate.refund_id,
            gateway=self.gateway.value,
        )


class NagadProofMatcher(ProofMatcher):
    """Nagad refunds are logged under the synthetic ``REF-{paymentRefId}`` id."""

    gateway = Gateway.NAGAD

    @staticmethod
    def refund_correlation_id(payment_ref_id: str) -> str:
        return f"{REFUND_CORRELATION_PREFIX}{payment_ref_id}"

    async def find_proof_candidates(self, candidate: RefundCandidate) -> List[GatewayLog]:
        return await self._logs.find(
            gateway=self.gateway,
            correlation_id=self.refund_correlation_id(candidate.correlation_id),
            status=GatewayLogStatus.SUCCESS,
        )

    async def recover_identifiers(self, candidate: RefundCandidate) -> Dict[str, Any]:
        logs = await self._logs.find(
            gateway=self.gateway,
            correlation_id=candidate.correlation_id,
            status=GatewayLogStatus.SUCCESS,
        )
        if not logs:
            raise ReconciliationGap(
                f"Could not find original Nagad session for transaction #{candidate.transaction_pk}",
                refund_id=candidate.refund_id,
                gateway=self.gateway.value,
            )

        for log in self._original_payment_logs(logs):
            order_id = self.extract_order_id(parse_payload(log.response_data))
            if order_id:
                return {"order_id": order_id, "source_log_id": log.id}

        raise ReconciliationGap(
            f"Could not find Nagad order id for transaction #{candidate.transaction_pk}",
            refund_id=candidate.refund_id,
            gateway=self.gateway.value,
        )

    @staticmethod
    def extract_order_id(response: Any) -> Optional[str]:
        """Order id from either ``{"verificationResult": {...}}`` or a flat payload."""
        if not isinstance(response, dict):
            return None
        verification = response.get("verificationResult")
        if not isinstance(verification, dict):
            verification = response
        return (
            verification.get("orderId")
            or verification.get("nagadOrderId")
            or response.get("nagadOrderId")
        )


class ReconciliationService:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        log_service: Optional[GatewayLogService] = None,
        providers: Optional[Dict[Gateway, BasePaymentProvider]] = None,
    ):
        self._error_handler = ErrorHandler(__name__)
        self._session_factory = session_factory or AsyncSessionLocal
        self._logs = log_service or GatewayLogService(self._session_factory)
        self._providers = providers or {}
        self._matchers: Dict[Gateway, ProofMatcher] = {
            Gateway.BKASH: BkashProofMatcher(self._logs),
            Gateway.NAGAD: NagadProofMatcher(self._logs),
        }

    def _provider(self, gateway: Gateway) -> BasePaymentProvider:
        return self._providers.get(gateway) or PaymentFactory.get_provider(gateway)

    async def repair_refunds(
        self,
        gateway: Union[Gateway, str],
        refund_id: Optional[int] = None,
        dry_run: bool = False,
    ) -> RepairSummary:
        """
        Check every COMPLETED refund of one gateway and replay the unproven ones.

        Args:
            gateway: Gateway to reconcile
            refund_id: Limit the run to a single refund
            dry_run: Report what would be repaired without calling the gateway

        Returns:
            RepairSummary with counters and one outcome per refund
        """
        gateway = resolve_gateway(gateway)
        matcher = self._matchers[gateway]
        summary = RepairSummary(gateway=gateway.value, dry_run=dry_run)

        candidates = await self._load_candidates(gateway, refund_id)
        self._error_handler.logger.info(f"Found {len(candidates)} {gateway.value} refunds to check")

        for candidate in candidates:
            try:
                outcome = await self._reconcile(gateway, matcher, candidate, dry_run)
            except ReconciliationGap as e:
                self._error_handler.logger.error(f"{e.message}. Manual refund required.")
                outcome = self._outcome(candidate, RepairOutcome.MANUAL_INTERVENTION, e.message)
            except PaymentGatewayError as e:
                self._error_handler.logger.error(
                    f"Refund #{candidate.refund_id} repair failed: {e.message}", extra=error_context(e)
                )
                outcome = self._outcome(candidate, RepairOutcome.FAILED, e.message)
            except Exception as e:
                self._error_handler.logger.error(
                    f"Unexpected error while reconciling refund #{candidate.refund_id}: {e}", exc_info=True
                )
                outcome = self._outcome(candidate, RepairOutcome.FAILED, str(e))
            summary.add(outcome)

        self._error_handler.logger.info(
            f"{gateway.value} refund reconciliation finished: checked={summary.checked} "
            f"repaired={summary.repaired} skipped={summary.skipped} "
            f"manual={summary.manual_intervention_needed} failed={summary.failed}"
        )
        return summary

    async def _load_candidates(self, gateway: Gateway, refund_id: Optional[int]) -> List[RefundCandidate]:
        query = (
            select(Refund)
            .join(Transaction, Refund.transaction_id == Transaction.id)
            .options(selectinload(Refund.transaction).selectinload(Transaction.invoice))
            .filter(
                Refund.status == RefundStatus.COMPLETED.value,
                Transaction.gateway == gateway.value,
                Transaction.status == TransactionStatus.SUCCESS.value,
            )
            .order_by(Refund.id.asc())
        )
        if refund_id is not None:
            query = query.filter(Refund.id == refund_id)

        async with self._session_factory() as session:
            result = await session.execute(query)
            refunds = result.scalars().all()
            return [
                RefundCandidate(
                    refund_id=refund.id,
                    transaction_pk=refund.transaction.id,
                    correlation_id=refund.transaction.transaction_id,
                    amount=refund.amount,
                    reason=refund.reason,
                    invoice_number=refund.transaction.invoice.invoice_number
                    if refund.transaction.invoice
                    else None,
                    payment_amount=refund.transaction.amount,
                    paid_at=refund.transaction.created_at,
                )
                for refund in refunds
            ]

    async def _reconcile(
        self,
        gateway: Gateway,
        matcher: ProofMatcher,
        candidate: RefundCandidate,
        dry_run: bool,
    ) -> RefundOutcome:
        if not candidate.correlation_id:
            raise ReconciliationGap(
                f"Transaction #{candidate.transaction_pk} has no gateway transaction id",
                refund_id=candidate.refund_id,
                gateway=gateway.value,
            )

        proof_candidates = await matcher.find_proof_candidates(candidate)
        proof = next((log for log in proof_candidates if is_authoritative_success(log)), None)
        if proof:
            self._error_handler.logger.info(
                f"Refund for transaction #{candidate.transaction_pk} ({candidate.correlation_id}) "
                f"already processed via API (log #{proof.id})"
            )
            return self._outcome(
                candidate, RepairOutcome.SKIPPED, f"Already proven by gateway log #{proof.id}"
            )
        if proof_candidates:
            self._error_handler.logger.warning(
                f"Ignoring false SUCCESS log(s) containing HTML for transaction #{candidate.transaction_pk}"
            )

        identifiers = await matcher.recover_identifiers(candidate)

        if dry_run:
            return self._outcome(
                candidate,
                RepairOutcome.WOULD_REPAIR,
                f"Would replay refund of {format_amount(candidate.amount)} using log #{identifiers['source_log_id']}",
            )

        self._error_handler.logger.warning(
            f"Refund for transaction #{candidate.transaction_pk} is stuck. Re-triggering..."
        )
        if gateway == Gateway.BKASH:
            return await self._replay_bkash(candidate, identifiers)
        return await self._replay_nagad(candidate, identifiers)

    async def _replay_bkash(self, candidate: RefundCandidate, identifiers: Dict[str, Any]) -> RefundOutcome:
        payment_id = identifiers["payment_id"]
        trx_id = identifiers["trx_id"]
        repair_request = {
            "type": "REFUND",
            "repair": True,
            "refundId": candidate.refund_id,
            "originalPaymentID": payment_id,
            "originalTrxID": trx_id,
            "refundAmount": format_amount(candidate.amount),
        }

        try:
            _, response = await self._provider(Gateway.BKASH).refund_payment(
                payment_id=payment_id,
                amount=candidate.amount,
                trx_id=trx_id,
                reason=candidate.reason or DEFAULT_REPAIR_REASON,
                sku=candidate.invoice_number or "refund",
            )
        except PaymentGatewayError as e:
            await self._logs.record(
                Gateway.BKASH,
                trx_id,
                GatewayLogStatus.FAILED,
                request=repair_request,
                response=error_context(e),
            )
            raise

        correlation_id = response.get("refundTrxID") or response.get("trxID") or trx_id
        log_id = await self._logs.record(
            Gateway.BKASH, correlation_id, GatewayLogStatus.SUCCESS, request=repair_request, response=response
        )
        self._error_handler.logger.info(f"bKash refund repaired. Refund TrxID: {correlation_id}")
        return self._outcome(
            candidate, RepairOutcome.REPAIRED, f"Refund TrxID {correlation_id}", repair_log_id=log_id
        )

    async def _replay_nagad(self, candidate: RefundCandidate, identifiers: Dict[str, Any]) -> RefundOutcome:
        payment_ref_id = candidate.correlation_id
        order_id = identifiers["order_id"]
        correlation_id = NagadProofMatcher.refund_correlation_id(payment_ref_id)
        repair_request = {
            "type": "REFUND",
            "repair": True,
            "refundId": candidate.refund_id,
            "originalPaymentRefId": payment_ref_id,
            "nagadOrderId": order_id,
            "refundAmount": format_amount(candidate.amount),
        }

        try:
            result = await self._provider(Gateway.NAGAD).refund_payment(
                payment_ref_id=payment_ref_id,
                amount=candidate.amount,
                gateway_order_id=order_id,
                reason=candidate.reason or DEFAULT_REPAIR_REASON,
                original_request_date=bangladesh_datetime(candidate.paid_at)[:8] if candidate.paid_at else None,
                original_amount=candidate.payment_amount,
            )
        except PaymentGatewayError as e:
            await self._logs.record(
                Gateway.NAGAD,
                correlation_id,
                GatewayLogStatus.FAILED,
                request=repair_request,
                response=error_context(e),
            )
            raise

        log_id = await self._logs.record(
            Gateway.NAGAD,
            correlation_id,
            GatewayLogStatus.SUCCESS,
            request=repair_request,
            response=result["response"],
        )
        self._error_handler.logger.info(f"Nagad refund repaired for Ref: {payment_ref_id}")
        return self._outcome(
            candidate, RepairOutcome.REPAIRED, f"Logged as {correlation_id}", repair_log_id=log_id
        )

    @staticmethod
    def _outcome(
        candidate: RefundCandidate,
        outcome: RepairOutcome,
        detail: str,
        repair_log_id: Optional[int] = None,
    ) -> RefundOutcome:
        return RefundOutcome(
            refund_id=candidate.refund_id,
            transaction_id=candidate.transaction_pk,
            correlation_id=candidate.correlation_id,
            outcome=outcome,
            detail=detail,
            repair_log_id=repair_log_id,
        )
