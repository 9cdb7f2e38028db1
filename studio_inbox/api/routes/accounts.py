"""
Account management API endpoints: configuration, default account,
connection tests, explicit sync, and the account-scoped folder and
conversation listings.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
import logging

from studio_inbox.api.auth import verify_api_key
from studio_inbox.api.dependencies import get_inbox_service
from studio_inbox.api.schemas import (
    AccountResponse,
    ConnectionTestResponse,
    ConversationDetailResponse,
    DeletedResponse,
    FolderResponse,
    MessageResponse,
    TestConnectionRequest,
)
from studio_inbox.core.email.errors import InboxValidationError
from studio_inbox.core.email.models import (
    AccountInput,
    AccountUpdate,
    ConversationSummary,
    FolderInput,
    SyncResult,
)
from studio_inbox.core.email.service import InboxService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/accounts", tags=["accounts"], dependencies=[Depends(verify_api_key)])


@router.get("", response_model=List[AccountResponse])
async def list_accounts(service: InboxService = Depends(get_inbox_service)):
    """List accounts, default account first"""
    return service.list_accounts()


@router.post("", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def create_account(payload: AccountInput, service: InboxService = Depends(get_inbox_service)):
    """Create an account with its default folders"""
    return service.create_account(payload)


@router.post("/test-connection", response_model=ConnectionTestResponse)
async def check_connection(payload: TestConnectionRequest, service: InboxService = Depends(get_inbox_service)):
    """
    Check a configuration against its mail servers.

    Incomplete settings are rejected with a ValidationError before any
    network call.
    """
    if payload.account_id is None and payload.account is None:
        raise InboxValidationError("Provide either account or account_id")
    result = await service.test_connection(payload.account, account_id=payload.account_id)
    return ConnectionTestResponse(**result.model_dump())


@router.get("/{account_id}", response_model=AccountResponse)
async def get_account(account_id: str, service: InboxService = Depends(get_inbox_service)):
    return service.get_account(account_id)


@router.put("/{account_id}", response_model=AccountResponse)
async def update_account(account_id: str, payload: AccountUpdate,
                         service: InboxService = Depends(get_inbox_service)):
    return service.update_account(account_id, payload)


@router.delete("/{account_id}", response_model=DeletedResponse)
async def delete_account(account_id: str, service: InboxService = Depends(get_inbox_service)):
    """Soft-delete the account with its folders and messages"""
    service.delete_account(account_id)
    return DeletedResponse(id=account_id)


@router.post("/{account_id}/default", response_model=AccountResponse)
async def make_default(account_id: str, service: InboxService = Depends(get_inbox_service)):
    return service.set_default_account(account_id)


@router.post("/{account_id}/sync", response_model=SyncResult)
async def sync_account(account_id: str, service: InboxService = Depends(get_inbox_service)):
    """Run a sync pass now (joins the running pass if one is in progress)"""
    return await service.sync_account(account_id)


@router.get("/{account_id}/folders", response_model=List[FolderResponse])
async def list_folders(account_id: str, service: InboxService = Depends(get_inbox_service)):
    """Folders ordered by sort_order, then name"""
    return service.list_folders(account_id)


@router.post("/{account_id}/folders", response_model=FolderResponse, status_code=status.HTTP_201_CREATED)
async def create_folder(account_id: str, payload: FolderInput,
                        service: InboxService = Depends(get_inbox_service)):
    return service.create_folder(account_id, payload)


@router.get("/{account_id}/conversations", response_model=List[ConversationSummary])
async def list_conversations(
    account_id: str,
    include_archived: bool = Query(False, description="Include fully archived conversations"),
    search: Optional[str] = Query(None, description="Case-insensitive subject search"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: InboxService = Depends(get_inbox_service),
):
    """Conversations by most recent activity"""
    return service.list_conversations(account_id, include_archived, search, limit, offset)


@router.get("/{account_id}/conversations/{thread_id:path}", response_model=ConversationDetailResponse)
async def get_conversation(account_id: str, thread_id: str, service: InboxService = Depends(get_inbox_service)):
    """Conversation summary plus its messages, oldest first"""
    summary, messages = service.get_conversation(account_id, thread_id)
    return ConversationDetailResponse(
        conversation=summary,
        messages=[MessageResponse.model_validate(m) for m in messages],
    )
