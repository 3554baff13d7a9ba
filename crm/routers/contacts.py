from typing import List

from fastapi import APIRouter, Depends, Response, status

from crm.auth import get_current_user
from crm.errors import ErrorKind, ServiceError, unwrap
from crm.repository import Repository
from crm.schemas import ContactCreate, ContactResponse, ContactUpdate, PublicUser
from crm.storage import get_repository

router = APIRouter(prefix="/api/contacts", tags=["contacts"])

CONTACT_NOT_FOUND = ServiceError(ErrorKind.NOT_FOUND, "Contact not found")
# Explicit nulls for these are ignored, the rest may be cleared
REQUIRED_FIELDS = frozenset({"name", "stage", "value"})


@router.get("", response_model=List[ContactResponse])
async def list_contacts(
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> List[ContactResponse]:
    return [ContactResponse.model_validate(c) for c in repository.list_contacts(user.id)]


@router.get("/{contact_id}", response_model=ContactResponse)
async def get_contact(
    contact_id: str,
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> ContactResponse:
    contact = repository.get_contact(user.id, contact_id)
    if contact is None:
        raise CONTACT_NOT_FOUND.to_http()
    return ContactResponse.model_validate(contact)


@router.post("", response_model=ContactResponse, status_code=status.HTTP_201_CREATED)
async def create_contact(
    body: ContactCreate,
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> ContactResponse:
    contact = unwrap(repository.create_contact(user.id, **body.model_dump()))
    return ContactResponse.model_validate(contact)


@router.put("/{contact_id}", response_model=ContactResponse)
async def update_contact(
    contact_id: str,
    body: ContactUpdate,
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> ContactResponse:
    updates = {
        k: v for k, v in body.model_dump(exclude_unset=True).items()
        if v is not None or k not in REQUIRED_FIELDS
    }
    contact = unwrap(repository.update_contact(user.id, contact_id, **updates))
    return ContactResponse.model_validate(contact)


@router.delete("/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_contact(
    contact_id: str,
    user: PublicUser = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
) -> Response:
    if not repository.delete_contact(user.id, contact_id):
        raise CONTACT_NOT_FOUND.to_http()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
