from typing import List

from fastapi import APIRouter, Depends, Response, status

from crm.auth import get_current_user
from crm.errors import ErrorKind, ServiceError
from crm.repository import Repository
from crm.schemas import AgentCreate, AgentResponse, AgentUpdate, PublicUser
from crm.storage import get_repository

router = APIRouter(prefix="/api/agents", tags=["agents"])

AGENT_NOT_FOUND = ServiceError(ErrorKind.NOT_FOUND, "Agent not found")


@router.get("", response_model=List[AgentResponse])
async def list_agents(
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> List[AgentResponse]:
    return [AgentResponse.model_validate(a) for a in repository.list_agents(user.id)]


@router.get("/{agent_id}", response_model=AgentResponse)
async def get_agent(
    agent_id: str,
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> AgentResponse:
    agent = repository.get_agent(user.id, agent_id)
    if agent is None:
        raise AGENT_NOT_FOUND.to_http()
    return AgentResponse.model_validate(agent)


@router.post("", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
async def create_agent(
    body: AgentCreate,
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> AgentResponse:
    return AgentResponse.model_validate(repository.create_agent(user.id, **body.model_dump()))


@router.put("/{agent_id}", response_model=AgentResponse)
async def update_agent(
    agent_id: str,
    body: AgentUpdate,
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> AgentResponse:
    agent = repository.update_agent(user.id, agent_id, **body.model_dump(exclude_unset=True, exclude_none=True))
    if agent is None:
        raise AGENT_NOT_FOUND.to_http()
    return AgentResponse.model_validate(agent)


@router.delete("/{agent_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_agent(
    agent_id: str,
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> Response:
    if not repository.delete_agent(user.id, agent_id):
        raise AGENT_NOT_FOUND.to_http()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
