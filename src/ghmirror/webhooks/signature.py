"""X-Hub-Signature-256 verification for inbound deliveries."""
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def sign(body: bytes, secret: str) -> str:
    """Header value GitHub would send for this body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """HMAC-SHA256 over the raw body, compared in constant time."""
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        logger.warning("Webhook rejected: missing or malformed signature header")
        return False
    if not hmac.compare_digest(signature_header, sign(body, secret)):
        logger.warning("Webhook rejected: signature mismatch")
        return False
    return True
