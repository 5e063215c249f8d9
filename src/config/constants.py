from enum import Enum


class Gateway(str, Enum):
    BKASH = "BKASH"
    NAGAD = "NAGAD_AUTO"


class TransactionStatus(str, Enum):
    INITIATED = "INITIATED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class GatewayLogStatus(str, Enum):
    INITIATED = "INITIATED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class RefundStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class InvoiceStatus(str, Enum):
    UNPAID = "UNPAID"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class RunMode(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class BkashMode(str, Enum):
    TOKENIZED = "tokenized"
    STANDARD = "standard"


class SettingGroup(str, Enum):
    BKASH = "BKASH"
    NAGAD = "NAGAD"
    MAIL = "MAIL"
    GENERAL = "general"


class RepairOutcome(str, Enum):
    REPAIRED = "repaired"
    SKIPPED = "skipped"
    MANUAL_INTERVENTION = "manual_intervention"
    FAILED = "failed"
    WOULD_REPAIR = "would_repair"


# Settings keys
BKASH_SETTING_KEYS = [
    "bkashAppKey",
    "bkashAppSecret",
    "bkashUsername",
    "bkashPassword",
    "bkashRunMode",
]

NAGAD_SETTING_KEYS = [
    "nagadMerchantId",
    "nagadPublicKey",
    "nagadPrivateKey",
    "nagadRunMode",
]

# Values encrypted at rest
SENSITIVE_SETTING_KEYS = [
    "bkashAppSecret",
    "bkashPassword",
    "nagadPrivateKey",
    "nagadPublicKey",
    "smtpPass",
]

BKASH_BASE_URLS = {
    (RunMode.PRODUCTION, BkashMode.TOKENIZED): "https://tokenized.pay.bka.sh/v1.2.0-beta/tokenized/checkout/",
    (RunMode.PRODUCTION, BkashMode.STANDARD): "https://checkout.pay.bka.sh/v1.2.0-beta/checkout/",
    (RunMode.SANDBOX, BkashMode.TOKENIZED): "https://tokenized.sandbox.bka.sh/v1.2.0-beta/tokenized/checkout/",
    (RunMode.SANDBOX, BkashMode.STANDARD): "https://checkout.sandbox.bka.sh/v1.2.0-beta/checkout/",
}

NAGAD_BASE_URLS = {
    RunMode.PRODUCTION: "https://api.mynagad.com/api/dfs/",
    RunMode.SANDBOX: "https://sandbox-ssl.mynagad.com/api/dfs/",
}

# bKash
BKASH_CURRENCY = "BDT"
BKASH_INTENT = "sale"
BKASH_TOKENIZED_CAPTURE_MODE = "0011"
BKASH_SUCCESS_STATUS_CODE = "0000"
BKASH_ALREADY_COMPLETED_CODE = "2062"
TOKEN_EXPIRY_SAFETY_MARGIN_SECONDS = 60

# Nagad
NAGAD_API_VERSION = "v-0.2.0"
NAGAD_CLIENT_TYPE = "PC_WEB"
NAGAD_CURRENCY_CODE = "050"
NAGAD_TIMEZONE = "Asia/Dhaka"
NAGAD_ORDER_ID_MAX_LENGTH = 20
NAGAD_CHALLENGE_LENGTH = 40
NAGAD_VERIFIED_STATUS = "Success"
NAGAD_VERIFIED_STATUS_CODE = "000"

# Audit trail
REFUND_CORRELATION_PREFIX = "REF-"
REFUND_LOG_MARKER = '"type":"REFUND"'
HTML_MARKERS = ("<html", "<!doctype")

# Local development fallback when no public client address is available
DEFAULT_CLIENT_IP = "103.100.100.100"


def enum_value(value):
    """Plain value for enum members, passthrough for raw strings."""
    return value.value if isinstance(value, Enum) else value
