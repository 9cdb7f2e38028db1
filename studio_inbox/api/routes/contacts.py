"""
Contact API endpoints
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status

from studio_inbox.api.auth import verify_api_key
from studio_inbox.api.dependencies import get_inbox_service
from studio_inbox.api.schemas import ContactResponse
from studio_inbox.core.email.models import ContactInput, ContactUpdate
from studio_inbox.core.email.service import InboxService

router = APIRouter(prefix="/api/contacts", tags=["contacts"], dependencies=[Depends(verify_api_key)])


@router.get("", response_model=List[ContactResponse])
async def list_contacts(
    search: Optional[str] = Query(None, description="Match email, name or company"),
    favorites_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: InboxService = Depends(get_inbox_service),
):
    """Contacts by frequency, then most recent contact"""
    return service.list_contacts(search, favorites_only, limit, offset)


@router.post("", response_model=ContactResponse, status_code=status.HTTP_201_CREATED)
async def create_contact(payload: ContactInput, service: InboxService = Depends(get_inbox_service)):
    return service.create_contact(payload)


@router.get("/{contact_id}", response_model=ContactResponse)
async def get_contact(contact_id: str, service: InboxService = Depends(get_inbox_service)):
    return service.get_contact(contact_id)


@router.put("/{contact_id}", response_model=ContactResponse)
async def update_contact(contact_id: str, payload: ContactUpdate, service: InboxService = Depends(get_inbox_service)):
    return service.update_contact(contact_id, payload)
