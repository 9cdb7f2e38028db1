"""
Message template API endpoints. Messages are composed from a template by
passing template_id (and template_values) with a draft, scheduled or
outgoing message.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status

from studio_inbox.api.auth import verify_api_key
from studio_inbox.api.dependencies import get_inbox_service
from studio_inbox.api.schemas import DeletedResponse, TemplateResponse
from studio_inbox.core.email.service import InboxService
from studio_inbox.core.email.templates import TemplateInput, TemplateUpdate

router = APIRouter(prefix="/api/templates", tags=["templates"], dependencies=[Depends(verify_api_key)])


@router.get("", response_model=List[TemplateResponse])
async def list_templates(category: Optional[str] = Query(None),
                         service: InboxService = Depends(get_inbox_service)):
    """Most used first, then by name"""
    return service.list_templates(category)


@router.post("", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(payload: TemplateInput, service: InboxService = Depends(get_inbox_service)):
    return service.create_template(payload)


@router.get("/{template_id}", response_model=TemplateResponse)
async def get_template(template_id: str, service: InboxService = Depends(get_inbox_service)):
    return service.get_template(template_id)


@router.put("/{template_id}", response_model=TemplateResponse)
async def update_template(template_id: str, payload: TemplateUpdate,
                          service: InboxService = Depends(get_inbox_service)):
    return service.update_template(template_id, payload)


@router.delete("/{template_id}", response_model=DeletedResponse)
async def delete_template(template_id: str, service: InboxService = Depends(get_inbox_service)):
    service.delete_template(template_id)
    return DeletedResponse(id=template_id)
