from datetime import datetime

from sqlalchemy import Boolean, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base


class SystemSetting(Base):
    """
    Key/value application settings, grouped by integration.
    Gateway credentials live here, optionally encrypted at rest.
    """

    __tablename__ = "system_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    setting_key: Mapped[str] = mapped_column(
        String(100), nullable=False, unique=True, index=True
    )
    setting_value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    setting_group: Mapped[str] = mapped_column(
        String(50), nullable=False, default="general"
    )
    # True once the value has been migrated to the iv:tag:ciphertext envelope
    encrypted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
