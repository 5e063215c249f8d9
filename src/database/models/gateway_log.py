"""
Append-only audit trail of outbound gateway calls.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from src.config.constants import GatewayLogStatus
from src.database.base import Base


class GatewayLog(Base):
    __tablename__ = "gateway_logs"
    __table_args__ = (
        Index("idx_gateway_logs_gateway_transaction_id", "gateway", "transaction_id"),
        Index("idx_gateway_logs_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    gateway: Mapped[str] = mapped_column(String(50), nullable=False)
    # bKash paymentID, Nagad paymentRefId, or REF-{paymentRefId} for refunds
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=GatewayLogStatus.INITIATED.value
    )
    request_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    response_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
