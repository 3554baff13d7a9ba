"""
In-memory repository.

Same contract and uniqueness rules as ``SqlAlchemyRepository``; rows are
transient ORM instances kept in dicts. Meant for tests and single-process
demos, so nothing here is shared between instances.
"""

import threading
from datetime import datetime
from typing import Dict, List, Optional

from crm.errors import ErrorKind, Result, fail, ok
from crm.models import (
    Agent,
    Contact,
    Conversation,
    Message,
    User,
    UserSession,
    WhatsappSettings,
)
from crm.repository import PHONE_NUMBER_ID_TAKEN, Repository, writable
from crm.utils import new_id, utcnow

CONTACT_DEFAULTS = {"stage": "new", "value": 0}
CONVERSATION_DEFAULTS = {"status": "active"}
AGENT_DEFAULTS = {
    "description": "",
    "status": "active",
    "model": "gpt-4",
    "prompt": "",
    "conversation_count": 0,
    "accuracy": 90,
}
SETTINGS_DEFAULTS = {"auto_responses": True, "is_active": False}


class InMemoryRepository(Repository):
    def __init__(self):
        self._lock = threading.RLock()
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, UserSession] = {}
        self.contacts: Dict[str, Contact] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, Message] = {}
        self.agents: Dict[str, Agent] = {}
        self.whatsapp_settings: Dict[str, WhatsappSettings] = {}

    # -- users ---------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.username == username), None)

    def get_user_by_reset_token(self, reset_token: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.reset_token == reset_token), None)

    def create_user(self, *, username: str, name: str, email: str, password_hash: str) -> Result:
        with self._lock:
            if self.get_user_by_email(email) or self.get_user_by_username(username):
                return fail(ErrorKind.CONFLICT, "user already exists")
            now = utcnow()
            user = User(
                id=new_id(),
                username=username,
                name=name,
                email=email,
                password_hash=password_hash,
                avatar=None,
                reset_token=None,
                reset_token_expiry=None,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return ok(user)

    def update_user(self, user_id: str, **updates) -> Optional[User]:
        user = self.users.get(user_id)
        if user is None:
            return None
        for key, value in writable(updates).items():
            setattr(user, key, value)
        user.updated_at = utcnow()
        return user

    # -- sessions ------------------------------------------------------------

    def create_session(self, user_id: str, token: str, expires_at: datetime) -> Result:
        with self._lock:
            if token in self.sessions:
                return fail(ErrorKind.CONFLICT, "session already exists")
            session = UserSession(
                id=new_id(), user_id=user_id, token=token, expires_at=expires_at, created_at=utcnow()
            )
            self.sessions[token] = session
            return ok(session)

    def get_session(self, token: str) -> Optional[UserSession]:
        return self.sessions.get(token)

    def delete_session(self, token: str) -> bool:
        with self._lock:
            return self.sessions.pop(token, None) is not None

    def delete_user_sessions(self, user_id: str) -> int:
        with self._lock:
            tokens = [t for t, s in self.sessions.items() if s.user_id == user_id]
            for token in tokens:
                del self.sessions[token]
            return len(tokens)

    # -- contacts ------------------------------------------------------------

    def _whatsapp_phone_taken(self, tenant_id: str, phone: Optional[str], exclude_id: Optional[str] = None) -> bool:
        return any(
            c.tenant_id == tenant_id and c.phone == phone and c.source == "whatsapp" and c.id != exclude_id
            for c in self.contacts.values()
        )

    def list_contacts(self, tenant_id: str) -> List[Contact]:
        return [c for c in self.contacts.values() if c.tenant_id == tenant_id]

    def get_contact(self, tenant_id: str, contact_id: str) -> Optional[Contact]:
        contact = self.contacts.get(contact_id)
        return contact if contact is not None and contact.tenant_id == tenant_id else None

    def find_contacts_by_phone(self, tenant_id: str, phone: str) -> List[Contact]:
        return [c for c in self.contacts.values() if c.tenant_id == tenant_id and c.phone == phone]

    def create_contact(self, tenant_id: str, **fields) -> Result:
        with self._lock:
            values = {
                "phone": None, "email": None, "company": None, "source": None, "notes": None,
                **CONTACT_DEFAULTS, **writable(fields),
            }
            if values["source"] == "whatsapp" and self._whatsapp_phone_taken(tenant_id, values["phone"]):
                return fail(ErrorKind.CONFLICT, "contact already exists")
            now = utcnow()
            contact = Contact(id=new_id(), tenant_id=tenant_id, created_at=now, updated_at=now, **values)
            self.contacts[contact.id] = contact
            return ok(contact)

    def update_contact(self, tenant_id: str, contact_id: str, **updates) -> Result:
        with self._lock:
            contact = self.get_contact(tenant_id, contact_id)
            if contact is None:
                return fail(ErrorKind.NOT_FOUND, "Contact not found")
            updates = writable(updates)
            phone = updates.get("phone", contact.phone)
            source = updates.get("source", contact.source)
            if source == "whatsapp" and self._whatsapp_phone_taken(tenant_id, phone, exclude_id=contact.id):
                return fail(ErrorKind.CONFLICT, "contact conflicts with an existing record")
            for key, value in updates.items():
                setattr(contact, key, value)
            contact.updated_at = utcnow()
            return ok(contact)

    def delete_contact(self, tenant_id: str, contact_id: str) -> bool:
        with self._lock:
            if self.get_contact(tenant_id, contact_id) is None:
                return False
            del self.contacts[contact_id]
            return True

    # -- conversations -------------------------------------------------------

    def _active_conversation_taken(self, tenant_id: str, contact_id: str, exclude_id: Optional[str] = None) -> bool:
        return any(
            c.tenant_id == tenant_id and c.contact_id == contact_id and c.status == "active" and c.id != exclude_id
            for c in self.conversations.values()
        )

    def list_conversations(self, tenant_id: str) -> List[Conversation]:
        found = [c for c in self.conversations.values() if c.tenant_id == tenant_id]
        return sorted(found, key=lambda c: c.last_message_at, reverse=True)

    def get_conversation(self, tenant_id: str, conversation_id: str) -> Optional[Conversation]:
        conversation = self.conversations.get(conversation_id)
        return conversation if conversation is not None and conversation.tenant_id == tenant_id else None

    def find_conversations_by_contact(self, tenant_id: str, contact_id: str) -> List[Conversation]:
        return [
            c for c in self.conversations.values()
            if c.tenant_id == tenant_id and c.contact_id == contact_id
        ]

    def create_conversation(self, tenant_id: str, **fields) -> Result:
        with self._lock:
            values = {"assigned_agent_id": None, **CONVERSATION_DEFAULTS, **writable(fields)}
            if values["status"] == "active" and self._active_conversation_taken(tenant_id, values["contact_id"]):
                return fail(ErrorKind.CONFLICT, "conversation already exists")
            now = utcnow()
            values.setdefault("last_message_at", now)
            conversation = Conversation(id=new_id(), tenant_id=tenant_id, created_at=now, **values)
            self.conversations[conversation.id] = conversation
            return ok(conversation)

    def update_conversation(self, tenant_id: str, conversation_id: str, **updates) -> Result:
        with self._lock:
            conversation = self.get_conversation(tenant_id, conversation_id)
            if conversation is None:
                return fail(ErrorKind.NOT_FOUND, "Conversation not found")
            updates = writable(updates)
            status = updates.get("status", conversation.status)
            contact_id = updates.get("contact_id", conversation.contact_id)
            if status == "active" and self._active_conversation_taken(
                tenant_id, contact_id, exclude_id=conversation.id
            ):
                return fail(ErrorKind.CONFLICT, "conversation conflicts with an existing record")
            for key, value in updates.items():
                setattr(conversation, key, value)
            return ok(conversation)

    # -- messages ------------------------------------------------------------

    def list_messages(self, tenant_id: str, conversation_id: str) -> List[Message]:
        found = [
            m for m in self.messages.values()
            if m.tenant_id == tenant_id and m.conversation_id == conversation_id
        ]
        # sorted() is stable, so equal timestamps keep insertion order
        return sorted(found, key=lambda m: m.timestamp)

    def create_message(
        self,
        tenant_id: str,
        conversation_id: str,
        *,
        content: str,
        is_incoming: bool,
        sender_id: Optional[str] = None,
        type: str = "text",
        external_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Result:
        with self._lock:
            conversation = self.get_conversation(tenant_id, conversation_id)
            if conversation is None:
                return fail(ErrorKind.NOT_FOUND, "Conversation not found")
            if external_id is not None and any(
                m.tenant_id == tenant_id and m.external_id == external_id for m in self.messages.values()
            ):
                return fail(ErrorKind.CONFLICT, "Message already stored")

            timestamp = timestamp or utcnow()
            message = Message(
                id=new_id(),
                tenant_id=tenant_id,
                conversation_id=conversation_id,
                sender_id=sender_id,
                external_id=external_id,
                content=content,
                type=type,
                is_incoming=is_incoming,
                timestamp=timestamp,
            )
            self.messages[message.id] = message
            conversation.last_message_at = timestamp
            return ok(message)

    # -- agents --------------------------------------------------------------

    def list_agents(self, tenant_id: str) -> List[Agent]:
        return [a for a in self.agents.values() if a.tenant_id == tenant_id]

    def get_agent(self, tenant_id: str, agent_id: str) -> Optional[Agent]:
        agent = self.agents.get(agent_id)
        return agent if agent is not None and agent.tenant_id == tenant_id else None

    def find_default_agent(self, tenant_id: str) -> Optional[Agent]:
        return next(
            (a for a in self.list_agents(tenant_id) if a.type == "sdr" and a.status == "active"),
            None,
        )

    def create_agent(self, tenant_id: str, **fields) -> Agent:
        with self._lock:
            values = {**AGENT_DEFAULTS, "tools": [], **writable(fields)}
            agent = Agent(id=new_id(), tenant_id=tenant_id, created_at=utcnow(), **values)
            self.agents[agent.id] = agent
            return agent

    def update_agent(self, tenant_id: str, agent_id: str, **updates) -> Optional[Agent]:
        agent = self.get_agent(tenant_id, agent_id)
        if agent is None:
            return None
        for key, value in writable(updates).items():
            setattr(agent, key, value)
        return agent

    def delete_agent(self, tenant_id: str, agent_id: str) -> bool:
        with self._lock:
            if self.get_agent(tenant_id, agent_id) is None:
                return False
            del self.agents[agent_id]
            return True

    # -- whatsapp settings ---------------------------------------------------

    def get_whatsapp_settings(self, tenant_id: str) -> Optional[WhatsappSettings]:
        return self.whatsapp_settings.get(tenant_id)

    def upsert_whatsapp_settings(self, tenant_id: str, **fields) -> Result:
        with self._lock:
            fields = writable(fields)
            phone_number_id = fields.get("phone_number_id")
            if phone_number_id and any(
                s.phone_number_id == phone_number_id and s.tenant_id != tenant_id
                for s in self.whatsapp_settings.values()
            ):
                return fail(ErrorKind.CONFLICT, PHONE_NUMBER_ID_TAKEN)
            settings_row = self.whatsapp_settings.get(tenant_id)
            if settings_row is None:
                settings_row = WhatsappSettings(
                    id=new_id(),
                    tenant_id=tenant_id,
                    access_token=None,
                    phone_number_id=None,
                    webhook_verify_token=None,
                    **SETTINGS_DEFAULTS,
                )
                self.whatsapp_settings[tenant_id] = settings_row
            for key, value in fields.items():
                setattr(settings_row, key, value)
            settings_row.updated_at = utcnow()
            return ok(settings_row)

    def find_whatsapp_settings_by_phone_number_id(self, phone_number_id: str) -> Optional[WhatsappSettings]:
        return next(
            (s for s in self.whatsapp_settings.values() if s.phone_number_id == phone_number_id),
            None,
        )

    def find_whatsapp_settings_by_verify_token(self, verify_token: str) -> Optional[WhatsappSettings]:
        return next(
            (s for s in self.whatsapp_settings.values() if s.webhook_verify_token == verify_token),
            None,
        )
