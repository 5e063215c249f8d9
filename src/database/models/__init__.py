# Import all models to ensure they are registered with SQLAlchemy
# This ensures all relationships can be resolved properly

from .gateway_log import GatewayLog
from .invoice import Invoice
from .refund import Refund
from .system_setting import SystemSetting
from .transaction import Transaction

__all__ = [
    "GatewayLog",
    "Invoice",
    "Refund",
    "SystemSetting",
    "Transaction",
]
