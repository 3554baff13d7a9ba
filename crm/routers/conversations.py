from typing import List

from fastapi import APIRouter, Depends, status

from crm.auth import get_current_user
from crm.errors import ErrorKind, ServiceError, unwrap
from crm.ingestion import IngestionOrchestrator, get_orchestrator
from crm.models import Conversation
from crm.repository import Repository
from crm.schemas import (
    AgentResponse,
    ContactResponse,
    ConversationCreate,
    ConversationDetail,
    ConversationResponse,
    ConversationUpdate,
    MessageCreate,
    MessageResponse,
    OutboundMessageResponse,
    PublicUser,
)
from crm.storage import get_repository

router = APIRouter(prefix="/api/conversations", tags=["conversations"])

CONVERSATION_NOT_FOUND = ServiceError(ErrorKind.NOT_FOUND, "Conversation not found")
CONTACT_NOT_FOUND = ServiceError(ErrorKind.NOT_FOUND, "Contact not found")
AGENT_NOT_FOUND = ServiceError(ErrorKind.NOT_FOUND, "Agent not found")


def _detail(repository: Repository, tenant_id: str, conversation: Conversation, with_messages: bool = True) -> ConversationDetail:
    detail = ConversationDetail.model_validate(conversation)
    contact = repository.get_contact(tenant_id, conversation.contact_id)
    if contact is not None:
        detail.contact = ContactResponse.model_validate(contact)
    if conversation.assigned_agent_id:
        agent = repository.get_agent(tenant_id, conversation.assigned_agent_id)
        if agent is not None:
            detail.agent = AgentResponse.model_validate(agent)
    if with_messages:
        messages = repository.list_messages(tenant_id, conversation.id)
        detail.message_count = len(messages)
        if messages:
            detail.last_message = MessageResponse.model_validate(messages[-1])
    return detail


@router.get("", response_model=List[ConversationDetail])
async def list_conversations(
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> List[ConversationDetail]:
    """Inbox view, most recent activity first."""
    return [_detail(repository, user.id, c) for c in repository.list_conversations(user.id)]


@router.get("/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(
    conversation_id: str,
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> ConversationDetail:
    conversation = repository.get_conversation(user.id, conversation_id)
    if conversation is None:
        raise CONVERSATION_NOT_FOUND.to_http()
    return _detail(repository, user.id, conversation, with_messages=False)


@router.post("", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    body: ConversationCreate,
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> ConversationResponse:
    if repository.get_contact(user.id, body.contact_id) is None:
        raise CONTACT_NOT_FOUND.to_http()
    if body.assigned_agent_id and repository.get_agent(user.id, body.assigned_agent_id) is None:
        raise AGENT_NOT_FOUND.to_http()
    conversation = unwrap(repository.create_conversation(user.id, **body.model_dump()))
    return ConversationResponse.model_validate(conversation)


@router.put("/{conversation_id}", response_model=ConversationResponse)
async def update_conversation(
    conversation_id: str,
    body: ConversationUpdate,
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> ConversationResponse:
    updates = body.model_dump(exclude_unset=True)
    if updates.get("status") is None:
        updates.pop("status", None)
    if updates.get("assigned_agent_id") and repository.get_agent(user.id, updates["assigned_agent_id"]) is None:
        raise AGENT_NOT_FOUND.to_http()
    conversation = unwrap(repository.update_conversation(user.id, conversation_id, **updates))
    return ConversationResponse.model_validate(conversation)


@router.get("/{conversation_id}/messages", response_model=List[MessageResponse])
async def list_messages(
    conversation_id: str,
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> List[MessageResponse]:
    if repository.get_conversation(user.id, conversation_id) is None:
        raise CONVERSATION_NOT_FOUND.to_http()
    return [MessageResponse.model_validate(m) for m in repository.list_messages(user.id, conversation_id)]


@router.post(
    "/{conversation_id}/messages",
    response_model=OutboundMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def post_message(
    conversation_id: str,
    body: MessageCreate,
    user: PublicUser = Depends(get_current_user),
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
) -> OutboundMessageResponse:
    """
    Store a message; outgoing ones are then relayed over WhatsApp when the
    tenant has it configured. Delivery failures only show in ``delivered``.
    """
    posted = unwrap(
        await orchestrator.post_message(
            user.id,
            conversation_id,
            body.content,
            is_incoming=body.is_incoming,
            sender_id=body.sender_id,
            type=body.type,
        )
    )
    response = OutboundMessageResponse.model_validate(posted.message)
    response.delivered = posted.delivered
    return response
