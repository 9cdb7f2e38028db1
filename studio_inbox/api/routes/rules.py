"""
Rule API endpoints. Conditions and actions are validated on write, so a
stored rule always parses.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status

from studio_inbox.api.auth import verify_api_key
from studio_inbox.api.dependencies import get_inbox_service
from studio_inbox.api.schemas import DeletedResponse, RuleResponse
from studio_inbox.core.email.rule_engine import RuleInput, RuleUpdate
from studio_inbox.core.email.service import InboxService

router = APIRouter(prefix="/api/rules", tags=["rules"], dependencies=[Depends(verify_api_key)])


@router.get("", response_model=List[RuleResponse])
async def list_rules(account_id: Optional[str] = Query(None, description="Only this account's rules"),
                     service: InboxService = Depends(get_inbox_service)):
    return service.list_rules(account_id)


@router.post("", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(payload: RuleInput, service: InboxService = Depends(get_inbox_service)):
    return service.create_rule(payload)


@router.get("/{rule_id}", response_model=RuleResponse)
async def get_rule(rule_id: str, service: InboxService = Depends(get_inbox_service)):
    return service.get_rule(rule_id)


@router.put("/{rule_id}", response_model=RuleResponse)
async def update_rule(rule_id: str, payload: RuleUpdate, service: InboxService = Depends(get_inbox_service)):
    return service.update_rule(rule_id, payload)


@router.delete("/{rule_id}", response_model=DeletedResponse)
async def delete_rule(rule_id: str, service: InboxService = Depends(get_inbox_service)):
    service.delete_rule(rule_id)
    return DeletedResponse(id=rule_id)
