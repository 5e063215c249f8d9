import os

from dotenv import load_dotenv

from src.shared.utils import get_logger

logger = get_logger(__name__)


load_dotenv()


class Settings:
    """Application configuration settings."""

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", None)
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "3600"))
    DB_COMMAND_TIMEOUT = int(os.getenv("DB_COMMAND_TIMEOUT", "60"))

    # Security
    # 64 hex characters (32 bytes) used for credentials at rest. Never log it.
    ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", None)

    # Redirect targets
    FRONTEND_URL = os.getenv("FRONTEND_URL", "").rstrip("/")
    BACKEND_URL = os.getenv("BACKEND_URL", "").rstrip("/")
    BRAND_LOGO_URL = os.getenv("BRAND_LOGO_URL", "")

    # Outbound gateway calls
    GATEWAY_HTTP_TIMEOUT = float(os.getenv("GATEWAY_HTTP_TIMEOUT", "30"))

    # bKash fallbacks (settings table values take priority)
    BKASH_APP_KEY = os.getenv("BKASH_APP_KEY", "")
    BKASH_APP_SECRET = os.getenv("BKASH_APP_SECRET", "")
    BKASH_USERNAME = os.getenv("BKASH_USERNAME", "")
    BKASH_PASSWORD = os.getenv("BKASH_PASSWORD", "")
    BKASH_RUN_MODE = os.getenv("BKASH_RUN_MODE", "sandbox")

    # Nagad fallbacks (settings table values take priority)
    NAGAD_MERCHANT_ID = os.getenv("NAGAD_MERCHANT_ID", "")
    NAGAD_PUBLIC_KEY = os.getenv("NAGAD_PUBLIC_KEY", "")
    NAGAD_MERCHANT_PRIVATE_KEY = os.getenv("NAGAD_MERCHANT_PRIVATE_KEY", "")
    NAGAD_RUN_MODE = os.getenv("NAGAD_RUN_MODE", "sandbox")


settings = Settings()
