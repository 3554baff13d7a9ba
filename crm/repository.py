"""
Tenant-scoped repository.

``Repository`` is the only storage surface the auth service and the ingestion
orchestrator know about. Every business-entity method takes ``tenant_id`` as
its first argument and never reads or writes a row owned by another tenant.
Two variants exist: ``SqlAlchemyRepository`` (below) and
``InMemoryRepository`` (crm.memory).

Writes that can hit a uniqueness rule return a ``(value, error)`` result with
``ErrorKind.CONFLICT`` instead of raising.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

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
from crm.utils import utcnow

logger = logging.getLogger(__name__)

# Columns a caller may never overwrite through an update
IMMUTABLE_FIELDS = frozenset({"id", "tenant_id", "created_at"})
PHONE_NUMBER_ID_TAKEN = "Phone number id is already registered to another account"


def writable(updates: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in updates.items() if k not in IMMUTABLE_FIELDS}


class Repository(ABC):
    """Storage contract shared by the persistent and in-memory variants."""

    # -- users ---------------------------------------------------------------

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_username(self, username: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_reset_token(self, reset_token: str) -> Optional[User]: ...

    @abstractmethod
    def create_user(self, *, username: str, name: str, email: str, password_hash: str) -> Result: ...

    @abstractmethod
    def update_user(self, user_id: str, **updates) -> Optional[User]: ...

    # -- sessions ------------------------------------------------------------

    @abstractmethod
    def create_session(self, user_id: str, token: str, expires_at: datetime) -> Result: ...

    @abstractmethod
    def get_session(self, token: str) -> Optional[UserSession]: ...

    @abstractmethod
    def delete_session(self, token: str) -> bool: ...

    @abstractmethod
    def delete_user_sessions(self, user_id: str) -> int: ...

    # -- contacts ------------------------------------------------------------

    @abstractmethod
    def list_contacts(self, tenant_id: str) -> List[Contact]: ...

    @abstractmethod
    def get_contact(self, tenant_id: str, contact_id: str) -> Optional[Contact]: ...

    @abstractmethod
    def find_contacts_by_phone(self, tenant_id: str, phone: str) -> List[Contact]:
        """Contacts of the tenant with exactly this phone, oldest first."""

    @abstractmethod
    def create_contact(self, tenant_id: str, **fields) -> Result: ...

    @abstractmethod
    def update_contact(self, tenant_id: str, contact_id: str, **updates) -> Result: ...

    @abstractmethod
    def delete_contact(self, tenant_id: str, contact_id: str) -> bool: ...

    # -- conversations -------------------------------------------------------

    @abstractmethod
    def list_conversations(self, tenant_id: str) -> List[Conversation]:
        """Conversations of the tenant, most recent activity first."""

    @abstractmethod
    def get_conversation(self, tenant_id: str, conversation_id: str) -> Optional[Conversation]: ...

    @abstractmethod
    def find_conversations_by_contact(self, tenant_id: str, contact_id: str) -> List[Conversation]:
        """Conversations with this contact, oldest first."""

    @abstractmethod
    def create_conversation(self, tenant_id: str, **fields) -> Result: ...

    @abstractmethod
    def update_conversation(self, tenant_id: str, conversation_id: str, **updates) -> Result: ...

    # -- messages ------------------------------------------------------------

    @abstractmethod
    def list_messages(self, tenant_id: str, conversation_id: str) -> List[Message]:
        """Messages of one conversation in timestamp order."""

    @abstractmethod
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
        """
        Append a message and bump the conversation's ``last_message_at`` in the
        same write. NOT_FOUND when the conversation is not the tenant's,
        CONFLICT when ``external_id`` was already stored for the tenant.
        """

    # -- agents --------------------------------------------------------------

    @abstractmethod
    def list_agents(self, tenant_id: str) -> List[Agent]: ...

    @abstractmethod
    def get_agent(self, tenant_id: str, agent_id: str) -> Optional[Agent]: ...

    @abstractmethod
    def find_default_agent(self, tenant_id: str) -> Optional[Agent]:
        """First active SDR agent of the tenant, by creation time."""

    @abstractmethod
    def create_agent(self, tenant_id: str, **fields) -> Agent: ...

    @abstractmethod
    def update_agent(self, tenant_id: str, agent_id: str, **updates) -> Optional[Agent]: ...

    @abstractmethod
    def delete_agent(self, tenant_id: str, agent_id: str) -> bool: ...

    # -- whatsapp settings ---------------------------------------------------

    @abstractmethod
    def get_whatsapp_settings(self, tenant_id: str) -> Optional[WhatsappSettings]: ...

    @abstractmethod
    def upsert_whatsapp_settings(self, tenant_id: str, **fields) -> Result:
        """CONFLICT when another tenant already owns the phone-number id."""

    # Routing lookups. These are the only reads not scoped by a tenant id,
    # since their purpose is to find which tenant a provider callback is for.

    @abstractmethod
    def find_whatsapp_settings_by_phone_number_id(self, phone_number_id: str) -> Optional[WhatsappSettings]: ...

    @abstractmethod
    def find_whatsapp_settings_by_verify_token(self, verify_token: str) -> Optional[WhatsappSettings]: ...


class SqlAlchemyRepository(Repository):
    """Persistent variant over one SQLAlchemy session. Each write commits."""

    def __init__(self, db: Session):
        self.db = db

    def _commit(self) -> None:
        # A failed flush leaves the session unusable until it is rolled back
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def _add(self, row, what: str) -> Result:
        try:
            self.db.add(row)
            self._commit()
        except IntegrityError:
            logger.info(f"Uniqueness conflict while creating {what}")
            return fail(ErrorKind.CONFLICT, f"{what} already exists")
        self.db.refresh(row)
        return ok(row)

    def _commit_update(self, row, what: str) -> Result:
        try:
            self._commit()
        except IntegrityError:
            logger.info(f"Uniqueness conflict while updating {what}")
            return fail(ErrorKind.CONFLICT, f"{what} conflicts with an existing record")
        self.db.refresh(row)
        return ok(row)

    # -- users ---------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter(User.email == email).first()

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self.db.query(User).filter(User.username == username).first()

    def get_user_by_reset_token(self, reset_token: str) -> Optional[User]:
        return self.db.query(User).filter(User.reset_token == reset_token).first()

    def create_user(self, *, username: str, name: str, email: str, password_hash: str) -> Result:
        user = User(username=username, name=name, email=email, password_hash=password_hash)
        return self._add(user, "user")

    def update_user(self, user_id: str, **updates) -> Optional[User]:
        user = self.get_user(user_id)
        if user is None:
            return None
        for key, value in writable(updates).items():
            setattr(user, key, value)
        user.updated_at = utcnow()
        self._commit()
        self.db.refresh(user)
        return user

    # -- sessions ------------------------------------------------------------

    def create_session(self, user_id: str, token: str, expires_at: datetime) -> Result:
        return self._add(UserSession(user_id=user_id, token=token, expires_at=expires_at), "session")

    def get_session(self, token: str) -> Optional[UserSession]:
        return self.db.query(UserSession).filter(UserSession.token == token).first()

    def delete_session(self, token: str) -> bool:
        deleted = self.db.query(UserSession).filter(UserSession.token == token).delete()
        self._commit()
        return deleted > 0

    def delete_user_sessions(self, user_id: str) -> int:
        deleted = self.db.query(UserSession).filter(UserSession.user_id == user_id).delete()
        self._commit()
        return deleted

    # -- contacts ------------------------------------------------------------

    def list_contacts(self, tenant_id: str) -> List[Contact]:
        return (
            self.db.query(Contact)
            .filter(Contact.tenant_id == tenant_id)
            .order_by(Contact.created_at.asc())
            .all()
        )

    def get_contact(self, tenant_id: str, contact_id: str) -> Optional[Contact]:
        return (
            self.db.query(Contact)
            .filter(Contact.tenant_id == tenant_id, Contact.id == contact_id)
            .first()
        )

    def find_contacts_by_phone(self, tenant_id: str, phone: str) -> List[Contact]:
        return (
            self.db.query(Contact)
            .filter(Contact.tenant_id == tenant_id, Contact.phone == phone)
            .order_by(Contact.created_at.asc())
            .all()
        )

    def create_contact(self, tenant_id: str, **fields) -> Result:
        return self._add(Contact(tenant_id=tenant_id, **writable(fields)), "contact")

    def update_contact(self, tenant_id: str, contact_id: str, **updates) -> Result:
        contact = self.get_contact(tenant_id, contact_id)
        if contact is None:
            return fail(ErrorKind.NOT_FOUND, "Contact not found")
        for key, value in writable(updates).items():
            setattr(contact, key, value)
        contact.updated_at = utcnow()
        return self._commit_update(contact, "contact")

    def delete_contact(self, tenant_id: str, contact_id: str) -> bool:
        deleted = (
            self.db.query(Contact)
            .filter(Contact.tenant_id == tenant_id, Contact.id == contact_id)
            .delete()
        )
        self._commit()
        return deleted > 0

    # -- conversations -------------------------------------------------------

    def list_conversations(self, tenant_id: str) -> List[Conversation]:
        return (
            self.db.query(Conversation)
            .filter(Conversation.tenant_id == tenant_id)
            .order_by(Conversation.last_message_at.desc())
            .all()
        )

    def get_conversation(self, tenant_id: str, conversation_id: str) -> Optional[Conversation]:
        return (
            self.db.query(Conversation)
            .filter(Conversation.tenant_id == tenant_id, Conversation.id == conversation_id)
            .first()
        )

    def find_conversations_by_contact(self, tenant_id: str, contact_id: str) -> List[Conversation]:
        return (
            self.db.query(Conversation)
            .filter(Conversation.tenant_id == tenant_id, Conversation.contact_id == contact_id)
            .order_by(Conversation.created_at.asc())
            .all()
        )

    def create_conversation(self, tenant_id: str, **fields) -> Result:
        return self._add(Conversation(tenant_id=tenant_id, **writable(fields)), "conversation")

    def update_conversation(self, tenant_id: str, conversation_id: str, **updates) -> Result:
        conversation = self.get_conversation(tenant_id, conversation_id)
        if conversation is None:
            return fail(ErrorKind.NOT_FOUND, "Conversation not found")
        for key, value in writable(updates).items():
            setattr(conversation, key, value)
        return self._commit_update(conversation, "conversation")

    # -- messages ------------------------------------------------------------

    def list_messages(self, tenant_id: str, conversation_id: str) -> List[Message]:
        return (
            self.db.query(Message)
            .filter(Message.tenant_id == tenant_id, Message.conversation_id == conversation_id)
            .order_by(Message.timestamp.asc(), Message.id.asc())
            .all()
        )

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
        if self.get_conversation(tenant_id, conversation_id) is None:
            return fail(ErrorKind.NOT_FOUND, "Conversation not found")

        timestamp = timestamp or utcnow()
        message = Message(
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            sender_id=sender_id,
            external_id=external_id,
            content=content,
            type=type,
            is_incoming=is_incoming,
            timestamp=timestamp,
        )
        try:
            self.db.add(message)
            # Single UPDATE statement so concurrent appends do not read-modify-write
            self.db.execute(
                update(Conversation)
                .where(Conversation.tenant_id == tenant_id, Conversation.id == conversation_id)
                .values(last_message_at=timestamp)
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Duplicate message detected: {external_id}")
            return fail(ErrorKind.CONFLICT, "Message already stored")
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(message)
        return ok(message)

    # -- agents --------------------------------------------------------------

    def list_agents(self, tenant_id: str) -> List[Agent]:
        return (
            self.db.query(Agent)
            .filter(Agent.tenant_id == tenant_id)
            .order_by(Agent.created_at.asc())
            .all()
        )

    def get_agent(self, tenant_id: str, agent_id: str) -> Optional[Agent]:
        return (
            self.db.query(Agent)
            .filter(Agent.tenant_id == tenant_id, Agent.id == agent_id)
            .first()
        )

    def find_default_agent(self, tenant_id: str) -> Optional[Agent]:
        return (
            self.db.query(Agent)
            .filter(Agent.tenant_id == tenant_id, Agent.type == "sdr", Agent.status == "active")
            .order_by(Agent.created_at.asc())
            .first()
        )

    def create_agent(self, tenant_id: str, **fields) -> Agent:
        agent = Agent(tenant_id=tenant_id, **writable(fields))
        self.db.add(agent)
        self._commit()
        self.db.refresh(agent)
        return agent

    def update_agent(self, tenant_id: str, agent_id: str, **updates) -> Optional[Agent]:
        agent = self.get_agent(tenant_id, agent_id)
        if agent is None:
            return None
        for key, value in writable(updates).items():
            setattr(agent, key, value)
        self._commit()
        self.db.refresh(agent)
        return agent

    def delete_agent(self, tenant_id: str, agent_id: str) -> bool:
        deleted = (
            self.db.query(Agent)
            .filter(Agent.tenant_id == tenant_id, Agent.id == agent_id)
            .delete()
        )
        self._commit()
        return deleted > 0

    # -- whatsapp settings ---------------------------------------------------

    def get_whatsapp_settings(self, tenant_id: str) -> Optional[WhatsappSettings]:
        return (
            self.db.query(WhatsappSettings)
            .filter(WhatsappSettings.tenant_id == tenant_id)
            .first()
        )

    def upsert_whatsapp_settings(self, tenant_id: str, **fields) -> Result:
        settings_row = self.get_whatsapp_settings(tenant_id)
        if settings_row is None:
            settings_row = WhatsappSettings(tenant_id=tenant_id)
            self.db.add(settings_row)
        for key, value in writable(fields).items():
            setattr(settings_row, key, value)
        settings_row.updated_at = utcnow()
        try:
            self._commit()
        except IntegrityError:
            logger.warning("Phone number id already claimed by another tenant", extra={"tenant_id": tenant_id})
            return fail(ErrorKind.CONFLICT, PHONE_NUMBER_ID_TAKEN)
        self.db.refresh(settings_row)
        return ok(settings_row)

    def find_whatsapp_settings_by_phone_number_id(self, phone_number_id: str) -> Optional[WhatsappSettings]:
        return (
            self.db.query(WhatsappSettings)
            .filter(WhatsappSettings.phone_number_id == phone_number_id)
            .first()
        )

    def find_whatsapp_settings_by_verify_token(self, verify_token: str) -> Optional[WhatsappSettings]:
        return (
            self.db.query(WhatsappSettings)
            .filter(WhatsappSettings.webhook_verify_token == verify_token)
            .first()
        )
