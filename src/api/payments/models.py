from typing import List, Optional

from pydantic import BaseModel, Field


class InitiatePaymentSchema(BaseModel):
    invoice_id: int = Field(..., gt=0, description="ID of the invoice to pay")


class PaymentResponseSchema(BaseModel):
    redirect_url: str
    correlation_id: str


class RepairRefundsSchema(BaseModel):
    refund_id: Optional[int] = Field(None, description="Limit the run to a single refund")
    dry_run: bool = Field(False, description="Report what would be repaired without calling the gateway")


class RefundOutcomeSchema(BaseModel):
    refund_id: int
    transaction_id: int
    correlation_id: Optional[str] = None
    outcome: str
    detail: str
    repair_log_id: Optional[int] = None


class RepairSummarySchema(BaseModel):
    gateway: str
    dry_run: bool
    checked: int
    repaired: int
    skipped: int
    manual_intervention_needed: int
    failed: int
    would_repair: int
    outcomes: List[RefundOutcomeSchema]
