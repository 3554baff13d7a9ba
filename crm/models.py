"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

Every business table carries ``tenant_id`` (the owning user's id). The
partial unique indexes below back the find-or-create steps of webhook
ingestion: at most one WhatsApp-sourced contact per phone and one active
conversation per contact, per tenant.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)

from crm.storage import Base
from crm.utils import new_id, utcnow


class User(Base):
    """An account. Its id doubles as the tenant id of everything it owns."""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    username = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True, index=True)
    password_hash = Column(String, nullable=False)
    avatar = Column(String, nullable=True)
    reset_token = Column(String, nullable=True, index=True)
    reset_token_expiry = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class UserSession(Base):
    """Opaque bearer token issued on login/register. Expiry is fixed at creation."""
    __tablename__ = "sessions"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    token = Column(String, nullable=False, unique=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (
        Index(
            "uq_contacts_tenant_phone_whatsapp",
            "tenant_id",
            "phone",
            unique=True,
            sqlite_where=text("source = 'whatsapp'"),
            postgresql_where=text("source = 'whatsapp'"),
        ),
    )

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    company = Column(String, nullable=True)
    source = Column(String, nullable=True)
    stage = Column(String, nullable=False, default="new")
    value = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        Index(
            "uq_conversations_tenant_contact_active",
            "tenant_id",
            "contact_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, index=True)
    contact_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="active")
    assigned_agent_id = Column(String, nullable=True)
    last_message_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Message(Base):
    """
    Append-only message. ``sender_id`` is the agent id, NULL when the contact wrote it.

    ``external_id`` is the provider message id for webhook-ingested messages;
    NULLs never collide, so API-created messages are unaffected by the constraint.
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_messages_tenant_external_id"),
    )

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, index=True)
    conversation_id = Column(String, nullable=False, index=True)
    sender_id = Column(String, nullable=True)
    external_id = Column(String, nullable=True)
    content = Column(Text, nullable=False)
    type = Column(String, nullable=False, default="text")
    is_incoming = Column(Boolean, nullable=False, default=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)


class Agent(Base):
    __tablename__ = "agents"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="active")
    model = Column(String, nullable=False, default="gpt-4")
    prompt = Column(Text, nullable=False, default="")
    tools = Column(JSON, nullable=False, default=list)
    conversation_count = Column(Integer, nullable=False, default=0)
    accuracy = Column(Integer, nullable=False, default=90)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class WhatsappSettings(Base):
    __tablename__ = "whatsapp_settings"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, unique=True)
    access_token = Column(Text, nullable=True)
    # One tenant per business number; inbound routing depends on it
    phone_number_id = Column(String, nullable=True, unique=True, index=True)
    webhook_verify_token = Column(String, nullable=True)
    auto_responses = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
