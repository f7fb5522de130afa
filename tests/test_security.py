import pytest

from domain.common.exceptions import AuthenticationException
from infrastructure.security.signatures import (
    CallbackAuthenticator,
    compute_callback_signature,
    compute_refund_signature,
    sign,
)
from infrastructure.security.vault import CredentialVault, VaultDecryptionError


def test_vault_round_trip_and_ciphertext_is_opaque():
    vault = CredentialVault("primary-key")
    token = vault.encrypt("shpat_secret")
    assert "shpat_secret" not in token
    assert vault.decrypt(token) == "shpat_secret"
    assert vault.decrypt_json(vault.encrypt_json({"sk": "a", "pk": None})) == {"sk": "a", "pk": None}


def test_vault_wrong_key_raises():
    token = CredentialVault("primary-key").encrypt("value")
    with pytest.raises(VaultDecryptionError):
        CredentialVault("other-key").decrypt(token)
    # 调用方按 ValueError 捕获
    with pytest.raises(ValueError):
        CredentialVault("other-key").decrypt("not-a-token")


def test_vault_rotation_keeps_old_ciphertext_readable():
    old = CredentialVault("old-key")
    token = old.encrypt("value")
    rotated = CredentialVault("new-key", fallback_keys=["old-key"])
    assert rotated.decrypt(token) == "value"
    assert CredentialVault("new-key").decrypt(rotated.rotate(token)) == "value"


def test_vault_requires_key():
    with pytest.raises(ValueError):
        CredentialVault("")


def test_signature_serializes_none_as_null():
    assert sign("s", "a", None) == sign("s", "a", "null")
    assert compute_refund_signature("s", None, "FLW-1") == sign("s", "null", "FLW-1")


def test_callback_authenticator_accepts_valid_signature():
    auth = CallbackAuthenticator("secret")
    signature = compute_callback_signature("secret", "acme.myshopify.com", "9001", "1001", "acc-1")
    auth.verify(signature.upper(), shop="acme.myshopify.com", tx_id="9001", tx_ref="1001", account_id="acc-1")


@pytest.mark.parametrize(
    "signature, message",
    [(None, "missing hmac"), ("", "missing hmac"), ("deadbeef", "hmac missmatch!")],
)
def test_callback_authenticator_rejects(signature, message):
    auth = CallbackAuthenticator("secret")
    with pytest.raises(AuthenticationException) as exc_info:
        auth.verify(signature, shop="acme.myshopify.com", tx_id="9001", tx_ref="1001", account_id="acc-1")
    assert exc_info.value.message == message


def test_callback_authenticator_rejects_tampered_field():
    auth = CallbackAuthenticator("secret")
    signature = compute_callback_signature("secret", "acme.myshopify.com", "9001", "1001", "acc-1")
    with pytest.raises(AuthenticationException):
        auth.verify(signature, shop="acme.myshopify.com", tx_id="9002", tx_ref="1001", account_id="acc-1")


def test_callback_authenticator_without_secret_rejects_everything():
    signature = compute_callback_signature("", "s", "1", "2", "3")
    with pytest.raises(AuthenticationException):
        CallbackAuthenticator(None).verify(signature, shop="s", tx_id="1", tx_ref="2", account_id="3")
