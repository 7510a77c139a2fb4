"""
Webhook payload signing.

Every outbound delivery carries ``X-Webhook-Signature``: the lowercase hex
HMAC-SHA256 of the raw request body, keyed with the subscription secret.

Receivers verify a request like this::

    import hmac, hashlib

    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    ok = hmac.compare_digest(expected, request.headers["X-Webhook-Signature"])

``verify`` below implements the same check and is what our own test
endpoints use.
"""
import hashlib
import hmac
import secrets

SECRET_PREFIX = "whsec_"
# Characters of the secret that may be shown after creation
VISIBLE_SECRET_CHARS = 12


def sign(payload: bytes, secret: str) -> str:
    """HMAC-SHA256 of ``payload`` keyed by ``secret``, as 64 hex chars."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify(payload: bytes, signature: str, secret: str) -> bool:
    """
    Check ``signature`` against ``payload`` in constant time.

    Never raises: a signature of the wrong length or with non-ASCII
    characters simply does not match.
    """
    if not isinstance(signature, str):
        return False
    expected = sign(payload, secret)
    try:
        return hmac.compare_digest(expected, signature)
    except TypeError:
        # compare_digest refuses non-ASCII str input
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def generate_secret() -> str:
    """New signing secret: ``whsec_`` + 24 random bytes, base64url."""
    return f"{SECRET_PREFIX}{secrets.token_urlsafe(24)}"


def secret_prefix(secret: str) -> str:
    """Short, non-sensitive hint of a secret for listings ("whsec_AbCd...")."""
    return f"{secret[:VISIBLE_SECRET_CHARS]}..."
