"""
Message API endpoints: listing, detail, single and bulk state changes,
drafts, scheduling and sending.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
import logging

from studio_inbox.api.auth import verify_api_key
from studio_inbox.api.dependencies import get_inbox_service
from studio_inbox.api.schemas import (
    BulkRequest,
    BulkResponse,
    DraftRequest,
    MessageActionRequest,
    MessageDetailResponse,
    MessageListResponse,
    MessageResponse,
    ScheduleRequest,
    SendRequest,
)
from studio_inbox.core.email.errors import InboxValidationError
from studio_inbox.core.email.models import ComposeInput, Mutation
from studio_inbox.core.email.service import InboxService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/messages", tags=["messages"], dependencies=[Depends(verify_api_key)])


@router.get("", response_model=MessageListResponse)
async def list_messages(
    account_id: Optional[str] = Query(None, description="Filter by account"),
    folder_id: Optional[str] = Query(None, description="Filter by folder"),
    thread_id: Optional[str] = Query(None, description="Filter by conversation"),
    unread_only: bool = Query(False, description="Only unread messages"),
    is_starred: Optional[bool] = Query(None),
    is_archived: Optional[bool] = Query(None),
    labels: Optional[List[str]] = Query(None, description="Any of these labels"),
    query: Optional[str] = Query(None, description="Free text in subject, body, sender, recipients"),
    order_by: str = Query("date_received"),
    descending: bool = Query(True),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: InboxService = Depends(get_inbox_service),
):
    """
    List messages with common filters (POST /api/search takes the full filter).
    """
    spec = {
        "account_id": account_id,
        "folder_id": folder_id,
        "thread_id": thread_id,
        "unread_only": unread_only,
        "is_starred": is_starred,
        "is_archived": is_archived,
        "labels": labels,
        "query": query,
        "order_by": order_by,
        "descending": descending,
        "limit": limit,
        "offset": offset,
    }
    page = service.search({k: v for k, v in spec.items() if v is not None})
    return MessageListResponse(
        items=[MessageResponse.model_validate(m) for m in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more,
    )


@router.post("/bulk", response_model=BulkResponse)
async def bulk_update(payload: BulkRequest, service: InboxService = Depends(get_inbox_service)):
    """
    Apply one mutation to many messages.

    Each message is its own transaction; failures are listed in `failed`
    and never undo the others.
    """
    result = service.bulk_update(payload.message_ids, payload.mutation, account_id=payload.account_id)
    return BulkResponse(succeeded=result.succeeded, failed=result.failed)


@router.post("/drafts", response_model=MessageDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_draft(payload: DraftRequest, service: InboxService = Depends(get_inbox_service)):
    return service.save_draft(payload.account_id, payload.message)


@router.put("/drafts/{draft_id}", response_model=MessageDetailResponse)
async def update_draft(draft_id: str, payload: DraftRequest, service: InboxService = Depends(get_inbox_service)):
    return service.save_draft(payload.account_id, payload.message, draft_id=draft_id)


@router.post("/schedule", response_model=MessageDetailResponse, status_code=status.HTTP_201_CREATED)
async def schedule_message(payload: ScheduleRequest, service: InboxService = Depends(get_inbox_service)):
    """Store a message to be sent at scheduled_for"""
    return service.schedule_message(payload.account_id, payload.message, payload.scheduled_for)


@router.post("/send", response_model=MessageDetailResponse)
async def send_message(payload: SendRequest, service: InboxService = Depends(get_inbox_service)):
    """Send a new message or a stored draft; the sent copy is filed in Sent"""
    if (payload.message is None) == (payload.draft_id is None):
        raise InboxValidationError("Provide exactly one of message or draft_id")
    return await service.send_message(payload.account_id, payload.message, draft_id=payload.draft_id)


@router.get("/{message_id}", response_model=MessageDetailResponse)
async def get_message(message_id: str, service: InboxService = Depends(get_inbox_service)):
    return service.get_message(message_id)


@router.patch("/{message_id}", response_model=MessageDetailResponse)
async def update_message(message_id: str, payload: Mutation, service: InboxService = Depends(get_inbox_service)):
    """Flags, labels, categories, folder or assignment of one message"""
    return service.update_message(message_id, payload)


@router.post("/{message_id}/actions", response_model=MessageDetailResponse)
async def message_action(message_id: str, payload: MessageActionRequest,
                         service: InboxService = Depends(get_inbox_service)):
    """mark_read, mark_unread, star, unstar, archive, unarchive, delete, restore ..."""
    return service.message_action(message_id, payload.action)


@router.delete("/{message_id}", response_model=MessageDetailResponse)
async def delete_message(message_id: str, service: InboxService = Depends(get_inbox_service)):
    """Soft delete"""
    return service.message_action(message_id, "delete")
