from library_app.security import hash_password, verify_password


def test_hash_has_digest_and_salt():
    stored = hash_password("secret")
    digest, salt = stored.split(":")
    assert digest and salt
    assert "secret" not in stored


def test_same_password_gets_different_salts():
    assert hash_password("secret") != hash_password("secret")


def test_verify_password():
    stored = hash_password("secret")
    assert verify_password("secret", stored)
    assert not verify_password("Secret", stored)


def test_malformed_hash_does_not_verify():
    assert not verify_password("secret", "no-separator")
    assert not verify_password("secret", "a:b:c")
    assert not verify_password("secret", "")
