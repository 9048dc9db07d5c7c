"""
Approval Request API Endpoints.

Requesters ask for edits/deletes of finalized orders, expenses and
transfers; approvers decide them.
"""

from fastapi import APIRouter, Depends, status, Query, Path
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from backend.app.db.session import get_db
from backend.app.core.dependencies import get_approval_workflow, get_current_actor
from backend.app.core.permissions import Actor
from backend.app.domain.approvals.workflow import ApprovalWorkflow
from backend.app.models.enums import ApprovalEntityType, ApprovalRequestType
from backend.app.schemas.approval import (
    ApprovalDecisionResponse,
    ApprovalReject,
    ApprovalRequestCreate,
    ApprovalRequestDetail,
    ApprovalRequestListResponse,
    ApprovalRequestResponse,
)

router = APIRouter(prefix="/approval-requests", tags=["Approval Requests"])


@router.post("", response_model=ApprovalRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_approval_request(
    payload: ApprovalRequestCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: ApprovalWorkflow = Depends(get_approval_workflow)
):
    """
    Request an edit or delete.

    A completed order is parked in pending_amend / pending_delete until the
    request is decided. Approvers are notified.
    """
    request = await workflow.create_request(
        db,
        actor,
        payload.entity_type,
        payload.entity_id,
        payload.request_type,
        payload.reason,
        payload.request_data,
    )
    await db.commit()
    await workflow.notifier.dispatch_outbox(db)
    await db.refresh(request)
    return request


@router.get("", response_model=ApprovalRequestListResponse)
async def list_approval_requests(
    status_filter: Optional[str] = Query("pending", alias="status", description="pending, approved, rejected or all"),
    entity_type: Optional[ApprovalEntityType] = Query(None),
    request_type: Optional[ApprovalRequestType] = Query(None),
    entity_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: ApprovalWorkflow = Depends(get_approval_workflow)
):
    """Requests the caller created, may decide, or that touch their own orders."""
    requests, total = await workflow.list_requests(
        db, actor, status_filter, entity_type, request_type, entity_id, limit, offset
    )
    return {"requests": requests, "total": total}


@router.get("/{request_id}", response_model=ApprovalRequestDetail)
async def get_approval_request(
    request_id: int = Path(..., description="Approval request ID"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: ApprovalWorkflow = Depends(get_approval_workflow)
):
    """The request, its original snapshot and the entity's current state."""
    request, current = await workflow.get_request(db, actor, request_id)
    response = ApprovalRequestDetail.model_validate(request)
    response.current_entity_data = current
    return response


@router.post("/{request_id}/approve", response_model=ApprovalDecisionResponse)
async def approve_request(
    request_id: int = Path(..., description="Approval request ID"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: ApprovalWorkflow = Depends(get_approval_workflow)
):
    """Apply the requested change. All postings commit together or not at all."""
    request, files = await workflow.approve(db, actor, request_id)
    await db.commit()
    await workflow.notifier.dispatch_outbox(db)
    if workflow.storage is not None:
        workflow.storage.delete_many(files)
    await db.refresh(request)
    return {"success": True, "message": "Request approved and action executed", "request": request}


@router.post("/{request_id}/reject", response_model=ApprovalDecisionResponse)
async def reject_request(
    payload: Optional[ApprovalReject] = None,
    request_id: int = Path(..., description="Approval request ID"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: ApprovalWorkflow = Depends(get_approval_workflow)
):
    request, files = await workflow.reject(db, actor, request_id, payload.reason if payload else None)
    await db.commit()
    await workflow.notifier.dispatch_outbox(db)
    if workflow.storage is not None:
        workflow.storage.delete_many(files)
    await db.refresh(request)
    return {"success": True, "message": "Request rejected", "request": request}
