"""
Inbound message ingestion and the outbound send path.

For every normalized webhook event, in payload order:

1. route the event to a tenant through the receiving phone-number id;
2. find the tenant's contact for the sender phone, or create one;
3. find the contact's conversation, or create one assigned to the first
   active SDR agent;
4. append the message (which also moves ``last_message_at``);
5. ask the gateway to mark the provider message as read.

Steps 2 to 4 are durable before step 5 runs, and nothing after step 4 can
undo them. A provider message id already stored for the tenant stops the
event after step 3, so webhook redeliveries are harmless.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, List, Optional

from fastapi import Depends

from crm.errors import ErrorKind, Result, fail, ok
from crm.gateway import GatewayCredentials, OutboundGateway, get_gateway
from crm.metrics import record_gateway_call, record_ingested_event
from crm.models import Contact, Conversation, Message
from crm.repository import Repository
from crm.storage import get_repository
from crm.utils import is_placeholder_contact_name, placeholder_contact_name, utcnow
from crm.webhook import NormalizedEvent, parse_webhook

logger = logging.getLogger(__name__)

# Bounded retries when a concurrent delivery created the same contact/conversation
RESOLVE_ATTEMPTS = 3


@dataclass
class IngestionResult:
    """Outcome of one event: created, duplicate, unknown_tenant or error."""
    event: NormalizedEvent
    status: str
    contact_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    acknowledged: bool = False


@dataclass
class PostedMessage:
    message: Message
    delivered: bool = False


class IngestionOrchestrator:
    def __init__(
        self,
        repository: Repository,
        gateway: OutboundGateway,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.gateway = gateway
        self.clock = clock

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def ingest_payload(self, payload: Any) -> List[IngestionResult]:
        return await self.ingest_events(parse_webhook(payload))

    async def ingest_events(self, events: List[NormalizedEvent]) -> List[IngestionResult]:
        """
        Process events one after the other, never concurrently, so messages
        of one batch land in conversation order. A failing event is logged
        and counted; the rest of the batch still runs.
        """
        results = []
        for event in events:
            routed = self.route(event)
            if routed is None:
                logger.warning(
                    "No tenant owns the receiving phone number, dropping event",
                    extra={"phone_number_id": event.phone_number_id, "message_id": event.external_message_id},
                )
                record_ingested_event("unknown_tenant")
                results.append(IngestionResult(event=event, status="unknown_tenant"))
                continue

            try:
                result = await self.ingest_event(routed)
            except Exception:
                logger.exception(
                    "Failed to ingest event",
                    extra={"tenant_id": routed.tenant_id, "message_id": routed.external_message_id},
                )
                result = IngestionResult(event=routed, status="error")
            record_ingested_event(result.status)
            results.append(result)
        return results

    def route(self, event: NormalizedEvent) -> Optional[NormalizedEvent]:
        """Attach the owning tenant to ``event``, or None when nobody owns its number."""
        if event.tenant_id:
            return event
        if not event.phone_number_id:
            return None
        settings_row = self.repository.find_whatsapp_settings_by_phone_number_id(event.phone_number_id)
        if settings_row is None:
            return None
        return replace(event, tenant_id=settings_row.tenant_id)

    async def ingest_event(self, event: NormalizedEvent) -> IngestionResult:
        tenant_id = event.tenant_id
        if not tenant_id:
            raise ValueError("event must be routed to a tenant before ingestion")

        contact, error = self.resolve_contact(tenant_id, event.from_address, event.display_name)
        if error is not None:
            logger.error(f"Contact resolution failed: {error.message}", extra={"tenant_id": tenant_id})
            return IngestionResult(event=event, status="error")

        conversation, error = self.resolve_conversation(tenant_id, contact.id)
        if error is not None:
            logger.error(f"Conversation resolution failed: {error.message}", extra={"tenant_id": tenant_id})
            return IngestionResult(event=event, status="error", contact_id=contact.id)

        message, error = self.repository.create_message(
            tenant_id,
            conversation.id,
            content=event.body,
            is_incoming=True,
            sender_id=None,
            type="text",
            external_id=event.external_message_id,
            timestamp=self.clock(),
        )
        if error is not None and error.kind is ErrorKind.CONFLICT:
            logger.info(
                "Redelivered message ignored",
                extra={"tenant_id": tenant_id, "message_id": event.external_message_id},
            )
            return IngestionResult(
                event=event, status="duplicate", contact_id=contact.id, conversation_id=conversation.id
            )
        if error is not None:
            logger.error(f"Message append failed: {error.message}", extra={"tenant_id": tenant_id})
            return IngestionResult(
                event=event, status="error", contact_id=contact.id, conversation_id=conversation.id
            )

        acknowledged = await self.acknowledge(tenant_id, event.external_message_id)
        return IngestionResult(
            event=event,
            status="created",
            contact_id=contact.id,
            conversation_id=conversation.id,
            message_id=message.id,
            acknowledged=acknowledged,
        )

    def resolve_contact(self, tenant_id: str, phone: str, display_name: Optional[str] = None) -> Result:
        """
        The tenant's first contact with ``phone``, created when missing.

        A profile name replaces a synthesized placeholder name once; a name
        typed by the operator, or one already backfilled, is never touched.
        """
        for _ in range(RESOLVE_ATTEMPTS):
            matches = self.repository.find_contacts_by_phone(tenant_id, phone)
            if matches:
                contact = matches[0]
                if display_name and is_placeholder_contact_name(contact.name) and contact.name != display_name:
                    updated, error = self.repository.update_contact(tenant_id, contact.id, name=display_name)
                    if error is None:
                        logger.info("Contact name backfilled", extra={"contact_id": contact.id})
                        contact = updated
                return ok(contact)

            contact, error = self.repository.create_contact(
                tenant_id,
                name=display_name or placeholder_contact_name(phone),
                phone=phone,
                source="whatsapp",
                stage="new",
            )
            if error is None:
                logger.info("Contact created from WhatsApp", extra={"contact_id": contact.id})
                return ok(contact)
            if error.kind is not ErrorKind.CONFLICT:
                return None, error
            logger.info("Contact created concurrently, resolving again", extra={"tenant_id": tenant_id})

        return fail(ErrorKind.CONFLICT, f"Could not resolve a contact for {phone}")

    def resolve_conversation(self, tenant_id: str, contact_id: str) -> Result:
        """
        The contact's first conversation, whatever its status, created when missing.
        Inbound messages never change a conversation's status.
        """
        for _ in range(RESOLVE_ATTEMPTS):
            matches = self.repository.find_conversations_by_contact(tenant_id, contact_id)
            if matches:
                return ok(matches[0])

            agent = self.repository.find_default_agent(tenant_id)
            conversation, error = self.repository.create_conversation(
                tenant_id,
                contact_id=contact_id,
                status="active",
                assigned_agent_id=agent.id if agent is not None else None,
            )
            if error is None:
                logger.info("Conversation created from WhatsApp", extra={"conversation_id": conversation.id})
                return ok(conversation)
            if error.kind is not ErrorKind.CONFLICT:
                return None, error
            logger.info("Conversation created concurrently, resolving again", extra={"tenant_id": tenant_id})

        return fail(ErrorKind.CONFLICT, f"Could not resolve a conversation for contact {contact_id}")

    async def acknowledge(self, tenant_id: str, external_message_id: str) -> bool:
        """Best-effort read receipt. A failure is logged, never propagated."""
        credentials = GatewayCredentials.from_settings(self.repository.get_whatsapp_settings(tenant_id))
        if credentials is None:
            record_gateway_call("mark_read", "skipped")
            return False
        try:
            return await self.gateway.mark_read(credentials, external_message_id)
        except Exception:
            logger.exception("Read receipt failed", extra={"tenant_id": tenant_id})
            return False

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def post_message(
        self,
        tenant_id: str,
        conversation_id: str,
        content: str,
        is_incoming: bool = False,
        sender_id: Optional[str] = None,
        type: str = "text",
    ) -> Result:
        """
        Store a message posted through the API and, for outgoing ones, relay
        it to the contact over WhatsApp.

        The message is stored first; delivery is attempted afterwards and its
        outcome only shows up as ``PostedMessage.delivered``.
        """
        conversation = self.repository.get_conversation(tenant_id, conversation_id)
        if conversation is None:
            return fail(ErrorKind.NOT_FOUND, "Conversation not found")
        if sender_id is not None and self.repository.get_agent(tenant_id, sender_id) is None:
            return fail(ErrorKind.NOT_FOUND, "Agent not found")

        message, error = self.repository.create_message(
            tenant_id,
            conversation_id,
            content=content,
            is_incoming=is_incoming,
            sender_id=sender_id,
            type=type,
            timestamp=self.clock(),
        )
        if error is not None:
            return None, error

        if is_incoming:
            return ok(PostedMessage(message=message))

        delivered = await self.relay(tenant_id, conversation, content)
        return ok(PostedMessage(message=message, delivered=delivered))

    async def relay(self, tenant_id: str, conversation: Conversation, text: str) -> bool:
        credentials = GatewayCredentials.from_settings(self.repository.get_whatsapp_settings(tenant_id))
        if credentials is None:
            logger.info("WhatsApp not configured, message stored only", extra={"tenant_id": tenant_id})
            record_gateway_call("send", "skipped")
            return False

        contact: Optional[Contact] = self.repository.get_contact(tenant_id, conversation.contact_id)
        if contact is None or not contact.phone:
            logger.warning(
                "Contact has no phone number, message stored only",
                extra={"tenant_id": tenant_id, "conversation_id": conversation.id},
            )
            record_gateway_call("send", "skipped")
            return False

        try:
            return await self.gateway.send_text(credentials, contact.phone, text)
        except Exception:
            logger.exception("Outbound relay failed", extra={"tenant_id": tenant_id})
            return False


def get_orchestrator(
    repository: Repository = Depends(get_repository),
    gateway: OutboundGateway = Depends(get_gateway),
) -> IngestionOrchestrator:
    return IngestionOrchestrator(repository, gateway)
