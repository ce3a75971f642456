"""Keyed hashing helpers.

Challenges are bound to their issuer with an HMAC over their fields, and
device fingerprints are salted so raw device attributes never leave the
process in a reversible form.
"""

import hashlib
import hmac
import secrets

from core.config import settings


def sign_fields(*fields: object, secret: str | None = None) -> str:
    """
    Compute an HMAC-SHA256 over a pipe-joined list of fields.

    Args:
        fields: Values to bind. They are converted with ``str`` and joined with ``|``.
        secret: Signing key. Defaults to CHALLENGE_SECRET_KEY.

    Returns:
        Hex digest of the signature.
    """
    key = secret if secret is not None else settings.CHALLENGE_SECRET_KEY
    message = "|".join(str(field) for field in fields)
    return hmac.new(key.encode(), message.encode(), hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: str) -> bool:
    """Compare two signatures in constant time."""
    return hmac.compare_digest(expected.encode(), provided.encode())


def hash_identifier(data: str, salt: str | None = None) -> str:
    """Salted SHA-256 of an identifier (device composite, email, IP)."""
    key = salt if salt is not None else settings.fingerprint_salt
    return hmac.new(key.encode(), data.encode(), hashlib.sha256).hexdigest()


def generate_secure_token(length: int = 16) -> str:
    """Generate a cryptographically secure random token."""
    return secrets.token_urlsafe(length)
