"""Credential helpers for locally issued identities.

A local credential is a random 64-hex-char secret. The public identity ID
and the stored hash are both derived from it with BLAKE2b under different
personalization strings, so the ID reveals nothing about the stored hash.
"""

import hashlib
import secrets
import string

IDENTITY_ID_LENGTH = 16
SECRET_LENGTH = 64

_ID_PERSON = b"parley-id"
_HASH_PERSON = b"parley-secret"


def generate_secret() -> str:
    return secrets.token_hex(SECRET_LENGTH // 2)


def is_well_formed(secret: str) -> bool:
    """Cheap shape check run before any store lookup."""
    return len(secret) == SECRET_LENGTH and all(c in string.hexdigits for c in secret)


def hash_secret(secret: str) -> str:
    return hashlib.blake2b(secret.encode(), digest_size=32, person=_HASH_PERSON).hexdigest()


def derive_id(secret: str) -> str:
    """Derive the public identity ID from a secret."""
    return hashlib.blake2b(
        secret.encode(), digest_size=IDENTITY_ID_LENGTH // 2, person=_ID_PERSON
    ).hexdigest()


def verify_secret(secret: str, expected_hash: str) -> bool:
    return secrets.compare_digest(hash_secret(secret), expected_hash)
