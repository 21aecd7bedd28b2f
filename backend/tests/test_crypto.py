import pytest

from app.core.crypto import DecryptionError, decrypt_secret, encrypt_secret


def test_secret_round_trip() -> None:
    token = encrypt_secret("p@ss w0rd")

    assert token != "p@ss w0rd"
    assert decrypt_secret(token) == "p@ss w0rd"
    assert decrypt_secret(token.encode("utf-8")) == "p@ss w0rd"


def test_each_encryption_uses_a_fresh_token() -> None:
    assert encrypt_secret("same") != encrypt_secret("same")


def test_wrong_key_is_rejected() -> None:
    token = encrypt_secret("secret", key="first-key")

    with pytest.raises(DecryptionError):
        decrypt_secret(token, key="second-key")


@pytest.mark.parametrize("token", ["", "not-a-token", b"garbage"])
def test_malformed_tokens_are_rejected(token) -> None:
    with pytest.raises(DecryptionError):
        decrypt_secret(token)
