"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses

The dashboard consumes camelCase JSON, so every model uses a camelCase alias
generator while the Python side stays snake_case.
"""

import re
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from crm.utils import normalize_phone

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ContactStage = Literal["new", "contacted", "qualified", "proposal", "closed"]
ConversationStatus = Literal["active", "pending", "resolved"]
AgentType = Literal["sdr", "support", "marketing"]
AgentStatus = Literal["active", "training", "inactive"]
MessageType = Literal["text", "image", "file"]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def _check_email(v: str) -> str:
    v = v.strip().lower()
    if not EMAIL_RE.match(v):
        raise ValueError("invalid email address")
    return v


def _clean_phone(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    return normalize_phone(v) or None


# =============================================================================
# Auth
# =============================================================================

class RegisterRequest(CamelModel):
    name: str = Field(..., min_length=2, description="Display name")
    username: str = Field(..., min_length=3, description="Unique login handle")
    email: str = Field(..., description="Unique e-mail address")
    password: str = Field(..., min_length=6, max_length=72)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _check_email(v)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=6, max_length=72)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _check_email(v)


class ForgotPasswordRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _check_email(v)


class ResetPasswordRequest(CamelModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6, max_length=72)


class PublicUser(CamelModel):
    """A user as the API shows it: never carries the password hash or reset token."""
    id: str
    username: str
    name: str
    email: str
    avatar: Optional[str] = None
    created_at: datetime


class AuthResponse(CamelModel):
    user: PublicUser
    token: str


class ForgotPasswordResponse(CamelModel):
    message: str
    reset_token: Optional[str] = None


class SuccessResponse(CamelModel):
    success: bool = True


# =============================================================================
# Contacts
# =============================================================================

class ContactCreate(CamelModel):
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None
    source: Optional[str] = None
    stage: ContactStage = "new"
    value: int = Field(0, ge=0)
    notes: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        return _clean_phone(v)


class ContactUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None
    source: Optional[str] = None
    stage: Optional[ContactStage] = None
    value: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        return _clean_phone(v)


class ContactResponse(CamelModel):
    id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None
    source: Optional[str] = None
    stage: str
    value: int
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# =============================================================================
# Agents
# =============================================================================

class AgentCreate(CamelModel):
    name: str = Field(..., min_length=1)
    type: AgentType
    description: str = ""
    status: AgentStatus = "active"
    model: str = "gpt-4"
    prompt: str = ""
    tools: List[str] = Field(default_factory=list)
    accuracy: int = Field(90, ge=0, le=100)


class AgentUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    type: Optional[AgentType] = None
    description: Optional[str] = None
    status: Optional[AgentStatus] = None
    model: Optional[str] = None
    prompt: Optional[str] = None
    tools: Optional[List[str]] = None
    accuracy: Optional[int] = Field(None, ge=0, le=100)


class AgentResponse(CamelModel):
    id: str
    name: str
    type: str
    description: str
    status: str
    model: str
    prompt: str
    tools: List[str]
    conversation_count: int
    accuracy: int
    created_at: datetime


# =============================================================================
# Conversations and messages
# =============================================================================

class ConversationCreate(CamelModel):
    contact_id: str
    status: ConversationStatus = "active"
    assigned_agent_id: Optional[str] = None


class ConversationUpdate(CamelModel):
    status: Optional[ConversationStatus] = None
    assigned_agent_id: Optional[str] = None


class ConversationResponse(CamelModel):
    id: str
    contact_id: str
    status: str
    assigned_agent_id: Optional[str] = None
    last_message_at: datetime
    created_at: datetime


class MessageCreate(CamelModel):
    content: str = Field(..., min_length=1, max_length=4096)
    type: MessageType = "text"
    is_incoming: bool = False
    sender_id: Optional[str] = None


class MessageResponse(CamelModel):
    id: str
    conversation_id: str
    sender_id: Optional[str] = None
    content: str
    type: str
    is_incoming: bool
    timestamp: datetime


class OutboundMessageResponse(MessageResponse):
    """Stored message plus whether the provider accepted the relay."""
    delivered: bool = False


class ConversationDetail(ConversationResponse):
    contact: Optional[ContactResponse] = None
    agent: Optional[AgentResponse] = None
    last_message: Optional[MessageResponse] = None
    message_count: int = 0


# =============================================================================
# WhatsApp
# =============================================================================

class WhatsappSettingsUpdate(CamelModel):
    access_token: Optional[str] = None
    phone_number_id: Optional[str] = None
    webhook_verify_token: Optional[str] = None
    auto_responses: Optional[bool] = None
    is_active: Optional[bool] = None

    @field_validator("phone_number_id")
    @classmethod
    def validate_phone_number_id(cls, v: Optional[str]) -> Optional[str]:
        # Blank means "not configured", never a shared empty id
        if v is None:
            return None
        return v.strip() or None


class WhatsappSettingsResponse(CamelModel):
    """Settings as shown to the owner. The access token itself is never echoed."""
    phone_number_id: Optional[str] = None
    webhook_verify_token: Optional[str] = None
    auto_responses: bool = True
    is_active: bool = False
    has_access_token: bool = False
    updated_at: Optional[datetime] = None


class WebhookResponse(BaseModel):
    """Response model for webhook deliveries; always 200 towards the provider."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: dict = Field(..., description="Machine-readable kind and human message")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
