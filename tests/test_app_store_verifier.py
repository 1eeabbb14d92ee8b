"""
App Store Verifier Tests
========================

Tests for signed payload verification and decoding:
- Valid chain and signature
- Untrusted root, bad signature, wrong algorithm, short chain
- Certificate validity window
- Field decoding (millisecond dates, environment, appAccountToken)
"""

from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from jose import jws

from app.core.errors import MalformedNotification, SignatureInvalid
from app.models.entitlement import StoreEnvironment
from app.services.app_store import AppStoreSignedPayloadVerifier, parse_environment

from tests.conftest import BUNDLE_ID, MONTHLY_PRODUCT, USER_ID, to_ms


class TestVerifyJws:

    def test_valid_payload_returns_claims(self, signer, verifier):
        claims = verifier.verify_jws(signer.sign({"hello": "world"}))
        assert claims == {"hello": "world"}

    def test_fingerprint_pin_accepts_colon_format(self, signer):
        fp = signer.root_fingerprint.upper()
        pinned = ":".join(fp[i:i + 2] for i in range(0, len(fp), 2))
        verifier = AppStoreSignedPayloadVerifier([pinned])
        assert verifier.verify_jws(signer.sign({"a": 1})) == {"a": 1}

    def test_untrusted_root_rejected(self, signer):
        verifier = AppStoreSignedPayloadVerifier(["00" * 32])
        with pytest.raises(SignatureInvalid):
            verifier.verify_jws(signer.sign({"a": 1}))

    def test_no_pinned_roots_rejects_everything(self, signer):
        verifier = AppStoreSignedPayloadVerifier([])
        with pytest.raises(SignatureInvalid):
            verifier.verify_jws(signer.sign({"a": 1}))

    def test_signature_from_other_key_rejected(self, signer, verifier):
        forged = signer.sign({"a": 1}, key=ec.generate_private_key(ec.SECP256R1()))
        with pytest.raises(SignatureInvalid):
            verifier.verify_jws(forged)

    def test_chain_out_of_order_rejected(self, signer, verifier):
        token = signer.sign({"a": 1}, chain=[signer.leaf, signer.root, signer.intermediate])
        with pytest.raises(SignatureInvalid):
            verifier.verify_jws(token)

    def test_short_chain_rejected(self, signer, verifier):
        with pytest.raises(SignatureInvalid):
            verifier.verify_jws(signer.sign({"a": 1}, chain=[signer.leaf]))

    def test_hmac_algorithm_rejected(self, signer, verifier):
        token = jws.sign(
            {"a": 1},
            "shared-secret",
            headers={"x5c": signer.x5c(signer.leaf, signer.intermediate, signer.root)},
            algorithm="HS256",
        )
        with pytest.raises(SignatureInvalid):
            verifier.verify_jws(token)

    def test_certificate_outside_validity_rejected(self, signer):
        verifier = AppStoreSignedPayloadVerifier(
            [signer.root_fingerprint],
            clock=lambda: datetime.now(timezone.utc) + timedelta(days=3650),
        )
        with pytest.raises(SignatureInvalid):
            verifier.verify_jws(signer.sign({"a": 1}))

    @pytest.mark.parametrize("token", ["", "not-a-jws", "a.b"])
    def test_garbage_is_malformed(self, verifier, token):
        with pytest.raises(MalformedNotification):
            verifier.verify_jws(token)


class TestDecodeTransaction:

    def test_decodes_subscription_fields(self, signer, verifier):
        purchased = datetime(2026, 2, 1, 8, 30, tzinfo=timezone.utc)
        expires = purchased + timedelta(days=30)
        txn = verifier.decode_transaction(signer.transaction(
            transaction_id="42",
            original_transaction_id="40",
            product_id=MONTHLY_PRODUCT,
            purchase_date=purchased,
            expires_date=expires,
        ))

        assert txn.transaction_id == "42"
        assert txn.original_transaction_id == "40"
        assert txn.product_id == MONTHLY_PRODUCT
        assert txn.purchase_date == purchased
        assert txn.expires_date == expires
        assert txn.revocation_date is None
        assert txn.app_account_token == USER_ID
        assert txn.environment == StoreEnvironment.PRODUCTION
        assert txn.bundle_id == BUNDLE_ID

    def test_lifetime_has_no_expiry(self, signer, verifier):
        txn = verifier.decode_transaction(signer.transaction())
        assert txn.expires_date is None

    def test_bundle_mismatch_rejected(self, signer):
        verifier = AppStoreSignedPayloadVerifier(
            [signer.root_fingerprint], bundle_id="com.example.other"
        )
        with pytest.raises(SignatureInvalid):
            verifier.decode_transaction(signer.transaction())

    def test_missing_fields_are_malformed(self, signer, verifier):
        claims = signer.transaction_claims()
        del claims["productId"]
        with pytest.raises(MalformedNotification):
            verifier.decode_transaction(signer.sign(claims))

    @pytest.mark.parametrize("expires_date", ["next month", 10 ** 20])
    def test_unparseable_dates_are_malformed(self, signer, verifier, expires_date):
        claims = signer.transaction_claims(product_id=MONTHLY_PRODUCT)
        claims["expiresDate"] = expires_date
        with pytest.raises(MalformedNotification):
            verifier.decode_transaction(signer.sign(claims))

    def test_non_uuid_app_account_token_is_dropped(self, signer, verifier):
        claims = signer.transaction_claims()
        claims["appAccountToken"] = "not-a-uuid"
        txn = verifier.decode_transaction(signer.sign(claims))
        assert txn.app_account_token is None


class TestDecodeNotification:

    def test_decodes_nested_transaction(self, signer, verifier):
        signed_at = datetime(2026, 3, 1, tzinfo=timezone.utc)
        notification = verifier.decode_notification(signer.notification(
            "REFUND",
            signed_at,
            signer.transaction(revocation_date=signed_at),
        ))

        assert notification.notification_type == "REFUND"
        assert notification.signed_date == signed_at
        assert notification.transaction.revocation_date == signed_at

    def test_test_notification_has_no_transaction(self, signer, verifier):
        notification = verifier.decode_notification(
            signer.notification("TEST", datetime.now(timezone.utc))
        )
        assert notification.transaction is None

    def test_forged_nested_transaction_rejected(self, signer, verifier):
        forged = signer.sign(
            signer.transaction_claims(),
            key=ec.generate_private_key(ec.SECP256R1()),
        )
        with pytest.raises(SignatureInvalid):
            verifier.decode_notification(
                signer.notification("ONE_TIME_CHARGE", datetime.now(timezone.utc), forged)
            )

    def test_missing_signed_date_is_malformed(self, signer, verifier):
        token = signer.sign({"notificationType": "DID_RENEW", "data": {}})
        with pytest.raises(MalformedNotification):
            verifier.decode_notification(token)

    @pytest.mark.parametrize("signed_date", ["abc", 10 ** 20, -(10 ** 20)])
    def test_unparseable_signed_date_is_malformed(self, signer, verifier, signed_date):
        token = signer.sign({
            "notificationType": "DID_RENEW",
            "signedDate": signed_date,
            "data": {"bundleId": BUNDLE_ID},
        })
        with pytest.raises(MalformedNotification):
            verifier.decode_notification(token)

    def test_sandbox_environment(self, signer, verifier):
        notification = verifier.decode_notification(signer.notification(
            "TEST", datetime.now(timezone.utc), environment="Sandbox"
        ))
        assert notification.environment == StoreEnvironment.SANDBOX


@pytest.mark.parametrize("value,expected", [
    ("Production", StoreEnvironment.PRODUCTION),
    ("Sandbox", StoreEnvironment.SANDBOX),
    ("Xcode", StoreEnvironment.SANDBOX),
    (None, StoreEnvironment.SANDBOX),
])
def test_parse_environment(value, expected):
    assert parse_environment(value) == expected


def test_epoch_millis_helper_matches_store_format():
    dt = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert to_ms(dt) == 1767225600000
