"""
Search API endpoint: the full declarative message filter
"""
from fastapi import APIRouter, Depends

from studio_inbox.api.auth import verify_api_key
from studio_inbox.api.dependencies import get_inbox_service
from studio_inbox.api.schemas import MessageListResponse, MessageResponse
from studio_inbox.core.email.models import MessageFilter
from studio_inbox.core.email.service import InboxService

router = APIRouter(prefix="/api/search", tags=["search"], dependencies=[Depends(verify_api_key)])


@router.post("", response_model=MessageListResponse)
async def search_messages(spec: MessageFilter, service: InboxService = Depends(get_inbox_service)):
    """
    Filter messages. All given predicates are combined with AND; labels and
    categories match on overlap; `query` is a case-insensitive substring
    match over subject, body, sender and recipients.
    """
    page = service.search(spec)
    return MessageListResponse(
        items=[MessageResponse.model_validate(m) for m in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more,
    )
