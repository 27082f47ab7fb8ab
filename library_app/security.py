"""Salted password digests in the ``digest:salt`` form stored on users."""

import base64
import hashlib
import hmac
import secrets

SALT_BYTES = 16


def _digest(password: str, salt: str) -> str:
    hashed = hashlib.sha256((password + salt).encode("utf-8")).digest()
    return base64.b64encode(hashed).decode("ascii")


def generate_salt() -> str:
    return base64.b64encode(secrets.token_bytes(SALT_BYTES)).decode("ascii")


def hash_password(password: str) -> str:
    salt = generate_salt()
    return f"{_digest(password, salt)}:{salt}"


def verify_password(password: str, stored_hash: str) -> bool:
    if not stored_hash or password is None:
        return False
    parts = stored_hash.split(":")
    if len(parts) != 2:
        return False
    digest, salt = parts
    return hmac.compare_digest(digest, _digest(password, salt))
