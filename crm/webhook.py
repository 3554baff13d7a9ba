"""
WhatsApp Cloud API webhook normalization and handshake verification.

Meta batches deliveries: ``entry[] -> changes[] -> value.messages[]``, with
the sender profile names in a parallel ``value.contacts[]`` array. Only text
messages become events. Anything unexpected yields fewer (or zero) events
instead of an exception: the webhook must answer 200 or Meta keeps retrying.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from crm.utils import normalize_phone

logger = logging.getLogger(__name__)

WHATSAPP_OBJECT = "whatsapp_business_account"


@dataclass(frozen=True)
class NormalizedEvent:
    """
    One inbound text message, independent of the provider payload layout.

    ``phone_number_id`` is the business number that received the message and
    routes the event to a tenant. ``tenant_id`` is filled once routing found
    the owner.
    """
    from_address: str
    external_message_id: str
    body: str
    phone_number_id: Optional[str] = None
    display_name: Optional[str] = None
    timestamp: Optional[datetime] = None
    tenant_id: Optional[str] = None


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _profile_names(value: Dict[str, Any]) -> Dict[str, str]:
    names = {}
    for contact in value.get("contacts") or []:
        if not isinstance(contact, dict):
            continue
        name = (contact.get("profile") or {}).get("name")
        wa_id = contact.get("wa_id")
        if name and wa_id:
            names[normalize_phone(str(wa_id))] = name
    return names


def _parse_change(value: Dict[str, Any]) -> List[NormalizedEvent]:
    phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
    names = _profile_names(value)
    events = []

    for message in value.get("messages") or []:
        if not isinstance(message, dict) or message.get("type") != "text":
            continue
        from_address = normalize_phone(str(message.get("from") or ""))
        message_id = message.get("id")
        body = (message.get("text") or {}).get("body")
        if not from_address or not message_id or body is None:
            logger.warning("Skipping incomplete text message", extra={"message_id": message_id})
            continue
        events.append(
            NormalizedEvent(
                from_address=from_address,
                external_message_id=str(message_id),
                body=str(body),
                phone_number_id=str(phone_number_id) if phone_number_id is not None else None,
                display_name=names.get(from_address),
                timestamp=_parse_timestamp(message.get("timestamp")),
            )
        )
    return events


def parse_webhook(payload: Any) -> List[NormalizedEvent]:
    """
    Flatten a webhook payload into events, in payload order.

    Never raises: malformed shapes are logged and produce an empty list.
    """
    try:
        if not isinstance(payload, dict) or payload.get("object") != WHATSAPP_OBJECT:
            return []
        events = []
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                if change.get("field") != "messages":
                    continue
                events.extend(_parse_change(change.get("value") or {}))
        return events
    except (AttributeError, TypeError, ValueError) as e:
        logger.warning(f"Discarding malformed webhook payload: {e}")
        return []


def verify_webhook(
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
    expected_tokens: Iterable[Optional[str]],
) -> Optional[str]:
    """
    Meta subscription handshake: echo ``challenge`` when ``mode`` is
    ``subscribe`` and ``token`` is one of the configured verify tokens.
    Returns None to reject.
    """
    if mode != "subscribe" or not token or challenge is None:
        return None
    if any(expected and token == expected for expected in expected_tokens):
        return challenge
    return None
