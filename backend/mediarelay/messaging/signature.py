"""LINE webhook signature verification.

LINE signs each webhook request body with HMAC-SHA256 using the channel
secret and sends the base64 digest in the ``X-Line-Signature`` header.
"""
import base64
import hashlib
import hmac

SIGNATURE_HEADER = "X-Line-Signature"


def compute_signature(body: bytes, channel_secret: str) -> str:
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes, signature: str, channel_secret: str) -> bool:
    """Return True if *signature* matches *body* for *channel_secret*."""
    if not signature or not channel_secret:
        return False
    expected = compute_signature(body, channel_secret)
    return hmac.compare_digest(expected, signature)
