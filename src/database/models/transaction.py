from datetime import datetime
from decimal import Decimal
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import DECIMAL, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.config.constants import TransactionStatus
from src.database.base import Base

if TYPE_CHECKING:
    from src.database.models.invoice import Invoice
    from src.database.models.refund import Refund


class Transaction(Base):
    """
    One attempted or completed payment.
    `transaction_id` is the gateway-side correlation id (bKash trxID, Nagad paymentRefId).
    """

    __tablename__ = "transactions"
    __table_args__ = (
        Index("idx_transactions_gateway_transaction_id", "gateway", "transaction_id"),
        Index("idx_transactions_invoice_id", "invoice_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    invoice_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("invoices.id"), nullable=True
    )
    gateway: Mapped[str] = mapped_column(String(50), nullable=False)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(DECIMAL(10, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.INITIATED.value
    )
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    invoice: Mapped[Optional["Invoice"]] = relationship(
        "Invoice", back_populates="transactions"
    )
    refunds: Mapped[List["Refund"]] = relationship(
        "Refund", back_populates="transaction"
    )
