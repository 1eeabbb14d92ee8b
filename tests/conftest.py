"""
Shared Test Fixtures
====================

- In-memory SQLite database (aiosqlite) with the ORM schema
- A throwaway App Store style certificate chain and JWS signer
- An httpx client bound to the FastAPI app with Redis mocked out
"""

import base64
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from unittest.mock import AsyncMock, patch

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-at-least-32-chars")

import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from httpx import ASGITransport, AsyncClient
from jose import jws
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.db.session as db_session
from app.core.security import create_access_token
from app.db.base import Base
from app.main import app as fastapi_app
from app.services.app_store import AppStoreSignedPayloadVerifier, get_verifier

BUNDLE_ID = "com.cybersimply.news"
LIFETIME_PRODUCT = "com.cybersimply.adfree.lifetime.2025"
MONTHLY_PRODUCT = "com.cybersimply.adfree.monthly.2025"
USER_ID = uuid.UUID("00000000-0000-0000-0000-0000000000a1")
OTHER_USER_ID = uuid.UUID("00000000-0000-0000-0000-0000000000b2")


def to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


# ---------------------------------------------------------------------------
# Certificates / JWS
# ---------------------------------------------------------------------------

def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _certificate(
    subject: str,
    key: ec.EllipticCurvePrivateKey,
    issuer: str,
    issuer_key: ec.EllipticCurvePrivateKey,
    is_ca: bool,
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
        .sign(issuer_key, hashes.SHA256())
    )


class AppStoreSigner:
    """Signs notification and transaction payloads like the App Store does."""

    def __init__(self):
        self.root_key = ec.generate_private_key(ec.SECP256R1())
        self.intermediate_key = ec.generate_private_key(ec.SECP256R1())
        self.leaf_key = ec.generate_private_key(ec.SECP256R1())

        self.root = _certificate("Test Root CA", self.root_key, "Test Root CA", self.root_key, True)
        self.intermediate = _certificate(
            "Test Intermediate", self.intermediate_key, "Test Root CA", self.root_key, True
        )
        self.leaf = _certificate(
            "Test Leaf", self.leaf_key, "Test Intermediate", self.intermediate_key, False
        )

    @property
    def root_fingerprint(self) -> str:
        return self.root.fingerprint(hashes.SHA256()).hex()

    @staticmethod
    def x5c(*certs: x509.Certificate) -> list[str]:
        return [
            base64.b64encode(c.public_bytes(serialization.Encoding.DER)).decode()
            for c in certs
        ]

    def sign(
        self,
        claims: dict[str, Any],
        *,
        key: Optional[ec.EllipticCurvePrivateKey] = None,
        chain: Optional[list[x509.Certificate]] = None,
    ) -> str:
        signing_key = (key or self.leaf_key).private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        chain = chain or [self.leaf, self.intermediate, self.root]
        return jws.sign(
            claims,
            signing_key,
            headers={"x5c": self.x5c(*chain)},
            algorithm="ES256",
        )

    def transaction_claims(
        self,
        *,
        transaction_id: str = "2000000000000001",
        original_transaction_id: Optional[str] = None,
        product_id: str = LIFETIME_PRODUCT,
        purchase_date: Optional[datetime] = None,
        expires_date: Optional[datetime] = None,
        revocation_date: Optional[datetime] = None,
        signed_date: Optional[datetime] = None,
        app_account_token: Optional[uuid.UUID] = USER_ID,
        environment: str = "Production",
    ) -> dict[str, Any]:
        purchase_date = purchase_date or datetime.now(timezone.utc) - timedelta(minutes=5)
        claims: dict[str, Any] = {
            "transactionId": transaction_id,
            "originalTransactionId": original_transaction_id or transaction_id,
            "bundleId": BUNDLE_ID,
            "productId": product_id,
            "purchaseDate": to_ms(purchase_date),
            "originalPurchaseDate": to_ms(purchase_date),
            "signedDate": to_ms(signed_date or datetime.now(timezone.utc)),
            "environment": environment,
            "type": "Non-Consumable" if expires_date is None else "Auto-Renewable Subscription",
        }
        if expires_date is not None:
            claims["expiresDate"] = to_ms(expires_date)
        if revocation_date is not None:
            claims["revocationDate"] = to_ms(revocation_date)
        if app_account_token is not None:
            claims["appAccountToken"] = str(app_account_token)
        return claims

    def transaction(self, **kwargs) -> str:
        return self.sign(self.transaction_claims(**kwargs))

    def notification(
        self,
        notification_type: str,
        signed_date: datetime,
        signed_transaction: Optional[str] = None,
        *,
        subtype: Optional[str] = None,
        environment: str = "Production",
    ) -> str:
        data: dict[str, Any] = {"bundleId": BUNDLE_ID, "environment": environment}
        if signed_transaction is not None:
            data["signedTransactionInfo"] = signed_transaction
        claims: dict[str, Any] = {
            "notificationType": notification_type,
            "notificationUUID": str(uuid.uuid4()),
            "signedDate": to_ms(signed_date),
            "version": "2.0",
            "data": data,
        }
        if subtype:
            claims["subtype"] = subtype
        return self.sign(claims)


@pytest.fixture(scope="session")
def signer() -> AppStoreSigner:
    return AppStoreSigner()


@pytest.fixture
def verifier(signer: AppStoreSigner) -> AppStoreSignedPayloadVerifier:
    return AppStoreSignedPayloadVerifier(
        root_fingerprints=[signer.root_fingerprint],
        bundle_id=BUNDLE_ID,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest.fixture
def redis_mock() -> AsyncMock:
    """Redis that always misses; records writes."""
    client = AsyncMock()
    client.get.return_value = None
    client.setex.return_value = True
    client.set.return_value = True
    client.delete.return_value = 1
    return client


@pytest_asyncio.fixture
async def client(session_factory, verifier, redis_mock, monkeypatch) -> AsyncClient:
    """App client wired to the test database, verifier and a mocked Redis."""
    monkeypatch.setattr(db_session, "_async_session_factory", session_factory)
    fastapi_app.dependency_overrides[get_verifier] = lambda: verifier

    with patch("app.services.cache.get_redis", return_value=redis_mock):
        async with AsyncClient(
            transport=ASGITransport(app=fastapi_app),
            base_url="http://test",
        ) as ac:
            yield ac

    fastapi_app.dependency_overrides.clear()


def auth_headers(user_id: uuid.UUID = USER_ID) -> dict[str, str]:
    token = create_access_token({"sub": str(user_id)})
    return {"Authorization": f"Bearer {token}"}
