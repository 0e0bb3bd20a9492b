from __future__ import annotations

import hashlib
import hmac
import logging
import os
import unicodedata

logger = logging.getLogger(__name__)

# scrypt cost parameters: N (CPU/memory cost), r (block size), p (parallelism).
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1
KEY_LENGTH = 64
SALT_BYTES = 16

# Larger inputs are rejected before hashing.
MAX_PASSWORD_LENGTH = 200

_DUMMY_SALT = "00" * SALT_BYTES


def hash_password(password: str, salt: str) -> str:
    """
    Derive a hex scrypt digest for password + salt.

    Args:
        password: Plain text password (NFC-normalized before hashing)
        salt: Hex salt from generate_salt()

    Returns:
        128-char hex digest (64 bytes)
    """
    digest = hashlib.scrypt(
        unicodedata.normalize("NFC", password).encode("utf-8"),
        salt=salt.encode("utf-8"),
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
        dklen=KEY_LENGTH,
    )
    return digest.hex()


def generate_salt() -> str:
    return os.urandom(SALT_BYTES).hex()


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    """
    Verify password against a stored scrypt digest with constant-time comparison.

    Never raises: oversized input, malformed salt/hash or any hashing error is a non-match.
    """
    if len(password) > MAX_PASSWORD_LENGTH:
        return False

    try:
        actual = hash_password(password, salt)
        return hmac.compare_digest(actual.encode("ascii"), str(expected_hash).encode("utf-8"))
    except Exception:
        logger.exception("Password verification failed; treating as non-match")
        return False


def dummy_verify(password: str) -> None:
    """Spend one derivation so that unknown accounts take as long as wrong passwords."""
    if len(password) > MAX_PASSWORD_LENGTH:
        return
    try:
        hash_password(password, _DUMMY_SALT)
    except Exception:
        logger.debug("Dummy password derivation failed", exc_info=True)
