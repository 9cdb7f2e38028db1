"""
Folder API endpoints (creation lives under /api/accounts/{id}/folders)
"""
from fastapi import APIRouter, Depends

from studio_inbox.api.auth import verify_api_key
from studio_inbox.api.dependencies import get_inbox_service
from studio_inbox.api.schemas import DeletedResponse, FolderResponse
from studio_inbox.core.email.models import FolderUpdate
from studio_inbox.core.email.service import InboxService

router = APIRouter(prefix="/api/folders", tags=["folders"], dependencies=[Depends(verify_api_key)])


@router.get("/{folder_id}", response_model=FolderResponse)
async def get_folder(folder_id: str, service: InboxService = Depends(get_inbox_service)):
    return service.get_folder(folder_id)


@router.put("/{folder_id}", response_model=FolderResponse)
async def update_folder(folder_id: str, payload: FolderUpdate, service: InboxService = Depends(get_inbox_service)):
    """Rename, reorder or re-parent a folder (cycles are rejected)"""
    return service.update_folder(folder_id, payload)


@router.delete("/{folder_id}", response_model=DeletedResponse)
async def delete_folder(folder_id: str, service: InboxService = Depends(get_inbox_service)):
    """Delete a custom folder; its messages move to Trash"""
    service.delete_folder(folder_id)
    return DeletedResponse(id=folder_id)
