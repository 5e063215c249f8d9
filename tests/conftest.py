import os

TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY
os.environ["FRONTEND_URL"] = "https://billing.example.com"
os.environ["BACKEND_URL"] = "https://api.billing.example.com"

import base64
from datetime import datetime
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.api.payments.credentials import CredentialStore
from src.api.payments.services.gateway_log_service import GatewayLogService
from src.api.payments.token_cache import TokenCache
from src.config.constants import InvoiceStatus, RefundStatus, TransactionStatus
from src.database.base import Base
from src.database.models import Invoice, Refund, Transaction
from src.services.settings_service import SettingsService
from src.shared.encryption import EncryptionService
from tests.gateway_stub import GatewayStub


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    await engine.dispose()


@pytest.fixture
def encryption() -> EncryptionService:
    return EncryptionService(key_hex=TEST_ENCRYPTION_KEY)


@pytest.fixture
def settings_service(session_factory, encryption) -> SettingsService:
    return SettingsService(session_factory=session_factory, encryption=encryption)


@pytest.fixture
def credential_store(settings_service) -> CredentialStore:
    return CredentialStore(settings_service=settings_service)


@pytest.fixture
def token_cache(settings_service) -> TokenCache:
    return TokenCache(settings_service=settings_service)


@pytest.fixture
def log_service(session_factory) -> GatewayLogService:
    return GatewayLogService(session_factory=session_factory)


# ---------------------------------------------------------------------------
# RSA keys
# ---------------------------------------------------------------------------


class KeyPair:
    """RSA key pair exposed the way merchants paste keys: bare base64 bodies."""

    def __init__(self):
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.public_key = self.private_key.public_key()

    @property
    def private_body(self) -> str:
        der = self.private_key.private_bytes(
            serialization.Encoding.DER,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        return base64.b64encode(der).decode("ascii")

    @property
    def public_body(self) -> str:
        der = self.public_key.public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return base64.b64encode(der).decode("ascii")

    def encrypt(self, text: str) -> str:
        return base64.b64encode(
            self.public_key.encrypt(text.encode("utf-8"), padding.PKCS1v15())
        ).decode("ascii")

    def decrypt(self, blob: str) -> str:
        return self.private_key.decrypt(base64.b64decode(blob), padding.PKCS1v15()).decode("utf-8")


@pytest.fixture(scope="session")
def merchant_keys() -> KeyPair:
    return KeyPair()


@pytest.fixture(scope="session")
def nagad_keys() -> KeyPair:
    return KeyPair()


# ---------------------------------------------------------------------------
# Gateway settings
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def bkash_settings(settings_service):
    await settings_service.upsert("bkashAppKey", "test-app-key")
    await settings_service.upsert("bkashAppSecret", "test-app-secret", encrypt=True)
    await settings_service.upsert("bkashUsername", "sandboxTokenizedUser01")
    await settings_service.upsert("bkashPassword", "test-password", encrypt=True)
    await settings_service.upsert("bkashRunMode", "sandbox")
    return settings_service


@pytest_asyncio.fixture
async def nagad_settings(settings_service, merchant_keys, nagad_keys):
    await settings_service.upsert("nagadMerchantId", "683002007104225")
    await settings_service.upsert("nagadPublicKey", nagad_keys.public_body, encrypt=True)
    await settings_service.upsert("nagadPrivateKey", merchant_keys.private_body, encrypt=True)
    await settings_service.upsert("nagadRunMode", "sandbox")
    return settings_service


# ---------------------------------------------------------------------------
# HTTP stubbing
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway_stub() -> GatewayStub:
    return GatewayStub()


# ---------------------------------------------------------------------------
# Billing records
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def make_invoice(session_factory):
    async def _make(invoice_number: str = "INV-1001", total: str = "100.00", status: str = InvoiceStatus.UNPAID.value):
        async with session_factory() as session:
            invoice = Invoice(
                invoice_number=invoice_number,
                total_amount=Decimal(total),
                amount_paid=Decimal("0.00"),
                status=status,
            )
            session.add(invoice)
            await session.commit()
            return invoice.id

    return _make


@pytest_asyncio.fixture
async def make_completed_refund(session_factory, make_invoice):
    async def _make(
        gateway: str,
        correlation_id: str,
        amount: str = "100.00",
        invoice_number: str = "INV-2001",
        refund_amount: Optional[str] = None,
        paid_at: Optional[datetime] = None,
        transaction_status: str = TransactionStatus.SUCCESS.value,
    ):
        invoice_id = await make_invoice(invoice_number=invoice_number, total=amount, status=InvoiceStatus.REFUNDED.value)
        async with session_factory() as session:
            transaction = Transaction(
                invoice_id=invoice_id,
                gateway=gateway,
                transaction_id=correlation_id,
                amount=Decimal(amount),
                status=transaction_status,
            )
            if paid_at is not None:
                transaction.created_at = paid_at
            session.add(transaction)
            await session.flush()
            refund = Refund(
                transaction_id=transaction.id,
                amount=Decimal(refund_amount or amount),
                reason="Customer cancelled",
                status=RefundStatus.COMPLETED.value,
            )
            session.add(refund)
            await session.commit()
            return refund.id

    return _make
