"""
Utility functions shared across the service.
"""

import hmac
import hashlib
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "WhatsApp User"
_PLACEHOLDER_RE = re.compile(r"^WhatsApp User \d+$")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp; the database columns store naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_phone(raw: str) -> str:
    """
    Bring a provider address into E.164-like form: a leading '+' then digits.

    WhatsApp sends ``from``/``wa_id`` without the '+', while contacts typed
    into the CRM usually carry it. Both must map to the same dedup key.
    """
    digits = re.sub(r"\D", "", raw or "")
    return f"+{digits}" if digits else ""


def placeholder_contact_name(phone: str) -> str:
    """Synthesized name for a contact that arrived without a profile name."""
    digits = re.sub(r"\D", "", phone)
    return f"{PLACEHOLDER_PREFIX} {digits[-4:] or '0'}"


def is_placeholder_contact_name(name: Optional[str]) -> bool:
    return bool(name) and _PLACEHOLDER_RE.match(name) is not None


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify a Meta ``X-Hub-Signature-256`` header.

    Args:
        body: Raw request body bytes
        signature: Header value, ``sha256=<hex digest>`` (bare hex is accepted too)
        secret: App secret of the Meta application

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature:
        return False

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    provided = signature[len("sha256="):] if signature.startswith("sha256=") else signature

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, provided)
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
