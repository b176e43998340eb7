import base64
import hashlib
import hmac
from typing import Optional

from app.errors import AuthenticationFailure


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw request body, as sent in X-Line-Signature."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Verify an inbound webhook signature. Fails closed on any missing input."""
    if not secret or not signature or raw_body is None:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))


def require_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """Raise AuthenticationFailure unless ``verify_signature`` accepts the request."""
    if not verify_signature(raw_body, signature, secret):
        reason = "missing" if not signature else "mismatch"
        raise AuthenticationFailure(f"LINE signature {reason}")
