"""
App Store Signed Payload Verification
=====================================

Verifies and decodes the JWS payloads Apple signs for App Store Server
Notifications v2 and StoreKit 2 transactions.

Verification:
    1. The JWS header must declare ``alg=ES256`` and carry an ``x5c``
       certificate chain (leaf first, root last).
    2. The root certificate's SHA-256 fingerprint must be one of the
       pinned fingerprints (``APP_STORE_ROOT_CERT_SHA256``).
    3. Each certificate must be issued by the next one in the chain and
       be inside its validity window.
    4. The JWS signature must verify against the leaf public key.

No pinned fingerprints means nothing verifies.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Iterable, Optional
import uuid

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from jose import jws
from jose.exceptions import JWSError

from app.config import settings
from app.core.errors import MalformedNotification, SignatureInvalid
from app.models.entitlement import StoreEnvironment
from app.utils.helpers import from_epoch_ms, utc_now

logger = logging.getLogger(__name__)

_ALLOWED_ALGORITHM = "ES256"


# =============================================================================
# Decoded payloads
# =============================================================================

@dataclass(frozen=True)
class DecodedTransaction:
    """Verified ``JWSTransactionDecodedPayload`` fields we act on."""

    transaction_id: str
    original_transaction_id: str
    product_id: str
    purchase_date: datetime
    original_purchase_date: Optional[datetime]
    expires_date: Optional[datetime]
    revocation_date: Optional[datetime]
    app_account_token: Optional[uuid.UUID]
    environment: StoreEnvironment
    signed_date: Optional[datetime]
    bundle_id: Optional[str] = None
    claims: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class DecodedNotification:
    """Verified ``responseBodyV2DecodedPayload`` fields we act on."""

    notification_type: str
    subtype: Optional[str]
    notification_uuid: Optional[str]
    signed_date: datetime
    environment: StoreEnvironment
    transaction: Optional[DecodedTransaction]


def parse_environment(value: Optional[str]) -> StoreEnvironment:
    """Map Apple's environment strings onto ours (Xcode/LocalTesting are sandbox)."""
    if value and value.lower() == "production":
        return StoreEnvironment.PRODUCTION
    return StoreEnvironment.SANDBOX


def _parse_token(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        logger.warning("Ignoring non-UUID appAccountToken %r", value)
        return None


# =============================================================================
# Verifier
# =============================================================================

class AppStoreSignedPayloadVerifier:
    """Verifies Apple-signed JWS payloads against pinned root certificates."""

    def __init__(
        self,
        root_fingerprints: Iterable[str],
        bundle_id: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.root_fingerprints = {
            fp.replace(":", "").lower() for fp in root_fingerprints if fp
        }
        self.bundle_id = bundle_id or None
        self._clock = clock

    # -------------------------------------------------------------------------
    # JWS
    # -------------------------------------------------------------------------

    def _load_chain(self, header: dict[str, Any]) -> list[x509.Certificate]:
        x5c = header.get("x5c")
        if not isinstance(x5c, list) or len(x5c) < 2:
            raise SignatureInvalid("x5c certificate chain missing or too short")
        try:
            return [
                x509.load_der_x509_certificate(base64.b64decode(cert))
                for cert in x5c
            ]
        except (ValueError, TypeError, binascii.Error) as e:
            raise SignatureInvalid(f"Unreadable x5c certificate: {e}") from e

    def _verify_chain(self, chain: list[x509.Certificate]) -> None:
        if not self.root_fingerprints:
            logger.error("No pinned App Store root certificates configured")
            raise SignatureInvalid("No trusted root certificates configured")

        root_fingerprint = chain[-1].fingerprint(hashes.SHA256()).hex()
        if root_fingerprint not in self.root_fingerprints:
            raise SignatureInvalid("Root certificate is not trusted")

        now = self._clock()
        for cert in chain:
            if not (cert.not_valid_before_utc <= now <= cert.not_valid_after_utc):
                raise SignatureInvalid(
                    f"Certificate {cert.subject.rfc4514_string()} outside validity window"
                )

        try:
            for child, issuer in zip(chain, chain[1:]):
                child.verify_directly_issued_by(issuer)
        except (InvalidSignature, ValueError, TypeError) as e:
            raise SignatureInvalid(f"Certificate chain does not verify: {e}") from e

    def verify_jws(self, token: str) -> dict[str, Any]:
        """
        Verify a signed payload and return its JSON claims.

        Raises:
            MalformedNotification: Token is not a JWS or its payload is not JSON.
            SignatureInvalid: Chain, pinning or signature checks failed.
        """
        if not token or not isinstance(token, str):
            raise MalformedNotification("Empty signed payload")

        try:
            header = jws.get_unverified_header(token)
        except JWSError as e:
            raise MalformedNotification(f"Unparseable JWS: {e}") from e

        if header.get("alg") != _ALLOWED_ALGORITHM:
            raise SignatureInvalid(f"Unexpected JWS algorithm {header.get('alg')!r}")

        chain = self._load_chain(header)
        self._verify_chain(chain)

        leaf_key = chain[0].public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        try:
            payload = jws.verify(token, leaf_key, algorithms=[_ALLOWED_ALGORITHM])
        except JWSError as e:
            raise SignatureInvalid(f"JWS signature does not verify: {e}") from e

        try:
            claims = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedNotification("JWS payload is not JSON") from e
        if not isinstance(claims, dict):
            raise MalformedNotification("JWS payload is not an object")
        return claims

    def _check_bundle(self, bundle_id: Optional[str]) -> None:
        if self.bundle_id and bundle_id != self.bundle_id:
            raise SignatureInvalid(f"Payload is for bundle {bundle_id!r}")

    # -------------------------------------------------------------------------
    # Decoding
    # -------------------------------------------------------------------------

    def decode_transaction(self, signed_transaction: str) -> DecodedTransaction:
        """
        Verify and decode a signed transaction (``signedTransactionInfo``).

        Args:
            signed_transaction: JWS from StoreKit or a notification's data.

        Returns:
            DecodedTransaction with dates converted from millisecond epochs.
        """
        claims = self.verify_jws(signed_transaction)
        self._check_bundle(claims.get("bundleId"))

        try:
            transaction_id = str(claims["transactionId"])
            product_id = str(claims["productId"])
            purchase_date = from_epoch_ms(claims["purchaseDate"])
            return DecodedTransaction(
                transaction_id=transaction_id,
                original_transaction_id=str(
                    claims.get("originalTransactionId") or transaction_id
                ),
                product_id=product_id,
                purchase_date=purchase_date,
                original_purchase_date=from_epoch_ms(claims.get("originalPurchaseDate")),
                expires_date=from_epoch_ms(claims.get("expiresDate")),
                revocation_date=from_epoch_ms(claims.get("revocationDate")),
                app_account_token=_parse_token(claims.get("appAccountToken")),
                environment=parse_environment(claims.get("environment")),
                signed_date=from_epoch_ms(claims.get("signedDate")),
                bundle_id=claims.get("bundleId"),
                claims=claims,
            )
        except (KeyError, TypeError, ValueError, OverflowError, OSError) as e:
            raise MalformedNotification(f"Transaction payload missing fields: {e}") from e

    def decode_notification(self, signed_payload: str) -> DecodedNotification:
        """
        Verify and decode a Server Notification v2 ``signedPayload``.

        The nested ``signedTransactionInfo`` is verified independently.
        ``TEST`` notifications carry no transaction.
        """
        claims = self.verify_jws(signed_payload)

        notification_type = claims.get("notificationType")
        try:
            signed_date = from_epoch_ms(claims.get("signedDate"))
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise MalformedNotification(f"Notification signedDate is invalid: {e}") from e
        if not notification_type or signed_date is None:
            raise MalformedNotification("Notification missing type or signedDate")

        data = claims.get("data") or {}
        if not isinstance(data, dict):
            raise MalformedNotification("Notification data is not an object")
        self._check_bundle(data.get("bundleId"))

        signed_transaction = data.get("signedTransactionInfo")
        transaction = (
            self.decode_transaction(signed_transaction) if signed_transaction else None
        )

        return DecodedNotification(
            notification_type=str(notification_type),
            subtype=claims.get("subtype"),
            notification_uuid=claims.get("notificationUUID"),
            signed_date=signed_date,
            environment=parse_environment(data.get("environment")),
            transaction=transaction,
        )


@lru_cache
def get_verifier() -> AppStoreSignedPayloadVerifier:
    """Process-wide verifier built from settings (FastAPI dependency)."""
    return AppStoreSignedPayloadVerifier(
        root_fingerprints=settings.app_store_root_fingerprints,
        bundle_id=settings.APP_STORE_BUNDLE_ID,
    )
