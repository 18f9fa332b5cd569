from __future__ import annotations

import hashlib
import hmac
import secrets


PBKDF2_ITERATIONS = 10_000
PBKDF2_DIGEST = "sha512"
DERIVED_KEY_BYTES = 64
SALT_BYTES = 16


def _derive(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac(
        PBKDF2_DIGEST,
        password.encode("utf-8"),
        salt,
        PBKDF2_ITERATIONS,
        dklen=DERIVED_KEY_BYTES,
    )


def hash_password(password: str) -> str:
    # Stored as "<salt hex>:<derived key hex>".
    salt = secrets.token_bytes(SALT_BYTES)
    return f"{salt.hex()}:{_derive(password, salt).hex()}"


def verify_password(password: str, stored: str) -> bool:
    # Malformed stored values never verify.
    salt_hex, sep, hash_hex = (stored or "").partition(":")
    if not sep or not salt_hex or not hash_hex:
        return False
    try:
        salt = bytes.fromhex(salt_hex)
    except ValueError:
        return False
    candidate = _derive(password, salt).hex()
    return hmac.compare_digest(candidate, hash_hex)
