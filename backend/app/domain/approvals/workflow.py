"""
Approval Workflow (Domain Logic).

Edits and deletes of finalized records go through a request that a second,
privileged user approves or rejects:

    create_request -> pending --approve--> approved (change applied)
                              --reject---> rejected (nothing applied)

A completed order is parked in pending_amend / pending_delete while its
request is open, which blocks every direct mutation path.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from pydantic import ValidationError
from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    InsufficientPermissionsError,
    InvalidArgumentError,
    ResourceNotFoundError,
    translate_integrity_error,
)
from backend.app.core.permissions import APPROVE_CAPABILITY, Actor, users_with_capability
from backend.app.domain.approvals.expense_actions import ExpenseLedger
from backend.app.domain.approvals.order_actions import (
    apply_order_amendment,
    execute_order_delete,
    uploaded_images,
)
from backend.app.domain.approvals.snapshot import snapshot_expense, snapshot_order, snapshot_transfer
from backend.app.domain.orders.access import APPROVAL_GATED_STATUSES, ensure_no_pending_request, load_order
from backend.app.domain.orders.sub_ledger import unreferenced_images
from backend.app.models.approval_request import ApprovalRequest
from backend.app.models.enums import (
    ApprovalEntityType,
    ApprovalRequestType,
    ApprovalStatus,
    OrderStatus,
)
from backend.app.models.expense import Expense, InternalTransfer
from backend.app.models.notification import NotificationType
from backend.app.models.order import Order
from backend.app.models.user import User
from backend.app.schemas.approval import AMENDMENT_SCHEMAS
from backend.app.services.audit import AuditAction, log_event
from backend.app.services.file_storage import FileStorage
from backend.app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

PARKED_STATUS = {
    ApprovalRequestType.EDIT: OrderStatus.PENDING_AMEND,
    ApprovalRequestType.DELETE: OrderStatus.PENDING_DELETE,
}

ENTITY_PAGES = {
    ApprovalEntityType.ORDER: "/orders",
    ApprovalEntityType.EXPENSE: "/expenses",
    ApprovalEntityType.TRANSFER: "/transfers",
}


def validate_request_data(entity_type: ApprovalEntityType, request_data: Optional[Dict]) -> Dict:
    """
    Check an edit payload against the amendment schema for the entity.

    Returns:
        The payload with only the fields the requester set, JSON-ready
    """
    if not request_data:
        raise InvalidArgumentError("Edit requests require request_data")

    schema = AMENDMENT_SCHEMAS[entity_type]
    try:
        amendment = schema.model_validate(request_data)
    except ValidationError as e:
        raise InvalidArgumentError(
            "Invalid amendment data",
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        )

    cleaned = amendment.model_dump(mode="json", exclude_unset=True)
    if not cleaned:
        raise InvalidArgumentError("Edit requests must change at least one field")
    return cleaned


class ApprovalWorkflow:
    """Request, approve and reject changes to orders, expenses and transfers."""

    def __init__(self, notifier: NotificationService, storage: Optional[FileStorage] = None):
        self.notifier = notifier
        self.storage = storage

    # Entity access

    @staticmethod
    async def _load_entity(db: AsyncSession, entity_type: ApprovalEntityType, entity_id: int):
        if entity_type == ApprovalEntityType.ORDER:
            return await load_order(db, entity_id)
        if entity_type == ApprovalEntityType.EXPENSE:
            return await ExpenseLedger.load_expense(db, entity_id)
        return await ExpenseLedger.load_transfer(db, entity_id)

    async def _snapshot(self, db: AsyncSession, entity_type: ApprovalEntityType, entity) -> Dict:
        if entity_type == ApprovalEntityType.ORDER:
            return await snapshot_order(db, entity, self.storage)
        if entity_type == ApprovalEntityType.EXPENSE:
            return snapshot_expense(entity, self.storage)
        return snapshot_transfer(entity)

    async def current_state(self, db: AsyncSession, request: ApprovalRequest) -> Optional[Dict]:
        """The entity as it is now; None once it has been deleted."""
        if request.entity_type == ApprovalEntityType.ORDER:
            entity = await db.get(Order, request.entity_id)
        elif request.entity_type == ApprovalEntityType.EXPENSE:
            entity = await db.get(Expense, request.entity_id)
            if entity is not None and entity.deleted_at is not None:
                entity = None
        else:
            entity = await db.get(InternalTransfer, request.entity_id)

        if entity is None:
            return None
        return await self._snapshot(db, request.entity_type, entity)

    @staticmethod
    async def _username(db: AsyncSession, user_id: int) -> Optional[str]:
        user = await db.get(User, user_id)
        return user.username if user else None

    # Operations

    async def create_request(
        self,
        db: AsyncSession,
        actor: Actor,
        entity_type: ApprovalEntityType,
        entity_id: int,
        request_type: ApprovalRequestType,
        reason: str,
        request_data: Optional[Dict] = None
    ) -> ApprovalRequest:
        """
        Open an approval request.

        Flow:
        1. Entity exists (NotFound), no pending request (Conflict)
        2. Order requests: request capability plus creator, handler or admin (Forbidden)
        3. Reason given; edit payload present and valid (InvalidArgument)
        4. Snapshot the entity before anything changes
        5. Park a completed order in pending_amend / pending_delete
        6. Notify every approver

        Returns:
            Flushed ApprovalRequest
        """
        entity_type = ApprovalEntityType(entity_type)
        request_type = ApprovalRequestType(request_type)

        entity = await self._load_entity(db, entity_type, entity_id)
        await ensure_no_pending_request(db, entity_type, entity_id)

        # Expense and transfer requests are open to any user
        if entity_type == ApprovalEntityType.ORDER:
            if not actor.can_request(request_type):
                raise InsufficientPermissionsError(
                    f"You are not allowed to request {request_type.value} operations",
                    details={"request_type": request_type.value},
                )
            if not actor.can_modify_order(entity):
                raise InsufficientPermissionsError(
                    f"Only the order's creator, handler or an admin can request order {request_type.value}",
                    details={"order_id": entity.id},
                )

        if not reason or not reason.strip():
            raise InvalidArgumentError("A reason is required")
        cleaned = None
        if request_type == ApprovalRequestType.EDIT:
            cleaned = validate_request_data(entity_type, request_data)

        original = await self._snapshot(db, entity_type, entity)

        request = ApprovalRequest(
            entity_type=entity_type,
            entity_id=entity_id,
            request_type=request_type,
            requested_by=actor.user_id,
            reason=reason.strip(),
            request_data=cleaned,
            original_entity_data=original,
            status=ApprovalStatus.PENDING,
        )
        db.add(request)
        try:
            await db.flush()
        except IntegrityError as e:
            # Concurrent request won the partial unique index
            raise translate_integrity_error(e)

        if entity_type == ApprovalEntityType.ORDER and entity.status == OrderStatus.COMPLETED:
            entity.status = PARKED_STATUS[request_type]
            await db.flush()

        approvers = await users_with_capability(db, APPROVE_CAPABILITY[request_type])
        requester_name = await self._username(db, actor.user_id)
        await self.notifier.notify(
            db,
            [uid for uid in approvers if uid != actor.user_id],
            NotificationType.APPROVAL_PENDING,
            title="New Approval Request",
            message=(
                f"{requester_name or 'A user'} has requested approval to "
                f"{request_type.value} {entity_type.value} #{entity_id}."
            ),
            entity_type=entity_type.value,
            entity_id=entity_id,
            metadata={"approval_request_id": request.id, "action_url": "/approval-requests"},
        )

        await log_event(
            db,
            AuditAction.APPROVAL_REQUESTED,
            actor_id=actor.user_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            metadata={"approval_request_id": request.id, "request_type": request_type.value},
        )
        logger.info(
            "Approval request %s opened: %s %s #%s by user %s",
            request.id, request_type.value, entity_type.value, entity_id, actor.user_id,
        )
        return request

    async def _load_pending(self, db: AsyncSession, actor: Actor, request_id: int) -> ApprovalRequest:
        request = await db.get(ApprovalRequest, request_id)
        if request is None:
            raise ResourceNotFoundError("Approval request", request_id)
        if not actor.can_approve(request.request_type):
            raise InsufficientPermissionsError(
                f"You are not allowed to decide {request.request_type.value} requests",
                details={"approval_request_id": request_id},
            )
        if request.status != ApprovalStatus.PENDING:
            raise ResourceNotFoundError("Pending approval request", request_id)
        return request

    async def _apply(self, db: AsyncSession, actor: Actor, request: ApprovalRequest) -> List[str]:
        """Execute the requested change. Returns files to remove after commit."""
        entity = await self._load_entity(db, request.entity_type, request.entity_id)
        deleting = request.request_type == ApprovalRequestType.DELETE

        if request.entity_type == ApprovalEntityType.ORDER:
            if deleting:
                return await execute_order_delete(db, entity, actor.user_id)
            files = await apply_order_amendment(db, entity, request.request_data or {}, self.storage)
            if entity.status in APPROVAL_GATED_STATUSES:
                entity.status = OrderStatus.COMPLETED
                await db.flush()
            return files

        if request.entity_type == ApprovalEntityType.EXPENSE:
            if deleting:
                image = entity.image_path
                await ExpenseLedger.delete_expense(db, entity)
                return [image] if image else []
            await ExpenseLedger.apply_expense_amendment(db, entity, request.request_data or {})
            return []

        if deleting:
            await ExpenseLedger.delete_transfer(db, entity)
        else:
            await ExpenseLedger.apply_transfer_amendment(db, entity, request.request_data or {})
        return []

    async def approve(self, db: AsyncSession, actor: Actor, request_id: int) -> Tuple[ApprovalRequest, List[str]]:
        """
        Approve a pending request and apply it in the caller's transaction.

        Returns:
            (request, file paths to delete once committed)
        """
        request = await self._load_pending(db, actor, request_id)

        # Only files no remaining row points at
        files = await unreferenced_images(db, await self._apply(db, actor, request))

        request.status = ApprovalStatus.APPROVED
        request.approved_by = actor.user_id
        request.approved_at = datetime.now(timezone.utc)
        await db.flush()

        approver_name = await self._username(db, actor.user_id)
        await self.notifier.notify(
            db,
            [request.requested_by],
            NotificationType.APPROVAL_APPROVED,
            title="Approval Request Approved",
            message=(
                f"Your {request.request_type.value} request for {request.entity_type.value} "
                f"#{request.entity_id} has been approved by {approver_name or 'Admin'}."
            ),
            entity_type=request.entity_type.value,
            entity_id=request.entity_id,
            metadata={"approval_request_id": request.id, "action_url": ENTITY_PAGES[request.entity_type]},
        )

        await log_event(
            db,
            AuditAction.APPROVAL_APPROVED,
            actor_id=actor.user_id,
            entity_type=request.entity_type.value,
            entity_id=request.entity_id,
            metadata={"approval_request_id": request.id, "request_type": request.request_type.value},
        )
        logger.info("Approval request %s approved by user %s", request.id, actor.user_id)
        return request, files

    async def reject(
        self,
        db: AsyncSession,
        actor: Actor,
        request_id: int,
        reason: Optional[str] = None
    ) -> Tuple[ApprovalRequest, List[str]]:
        """
        Reject a pending request; the entity is left as it was.

        Returns:
            (request, uploads made for the amendment, to delete once committed)
        """
        request = await self._load_pending(db, actor, request_id)

        files = []
        if request.entity_type == ApprovalEntityType.ORDER:
            order = await db.get(Order, request.entity_id)
            if order is not None and order.status in APPROVAL_GATED_STATUSES:
                order.status = OrderStatus.COMPLETED
            files = await uploaded_images(db, request.request_data, request.original_entity_data, self.storage)

        reason = reason.strip() if reason else None
        request.status = ApprovalStatus.REJECTED
        request.rejected_by = actor.user_id
        request.rejected_at = datetime.now(timezone.utc)
        request.rejection_reason = reason or f"{request.reason} (Rejected)"
        await db.flush()

        rejecter_name = await self._username(db, actor.user_id)
        await self.notifier.notify(
            db,
            [request.requested_by],
            NotificationType.APPROVAL_REJECTED,
            title="Approval Request Rejected",
            message=(
                f"Your {request.request_type.value} request for {request.entity_type.value} "
                f"#{request.entity_id} has been rejected by {rejecter_name or 'Admin'}."
                + (f" Reason: {reason}" if reason else "")
            ),
            entity_type=request.entity_type.value,
            entity_id=request.entity_id,
            metadata={"approval_request_id": request.id, "action_url": "/approval-requests"},
        )

        await log_event(
            db,
            AuditAction.APPROVAL_REJECTED,
            actor_id=actor.user_id,
            entity_type=request.entity_type.value,
            entity_id=request.entity_id,
            metadata={"approval_request_id": request.id, "reason": request.rejection_reason},
        )
        logger.info("Approval request %s rejected by user %s", request.id, actor.user_id)
        return request, files

    # Reads

    @staticmethod
    def _visibility(actor: Actor, entity_type: Optional[ApprovalEntityType], entity_id: Optional[int]):
        """Own requests, decidable request types, and requests on the actor's own orders."""
        conditions = [ApprovalRequest.requested_by == actor.user_id]
        for request_type in ApprovalRequestType:
            if actor.can_approve(request_type):
                conditions.append(ApprovalRequest.request_type == request_type)

        if entity_type == ApprovalEntityType.ORDER and entity_id is not None:
            own_orders = select(Order.id).where(
                or_(Order.created_by == actor.user_id, Order.handler_id == actor.user_id)
            )
            conditions.append(and_(
                ApprovalRequest.entity_type == ApprovalEntityType.ORDER,
                ApprovalRequest.entity_id.in_(own_orders),
            ))
        return or_(*conditions)

    async def list_requests(
        self,
        db: AsyncSession,
        actor: Actor,
        status: Optional[str] = "pending",
        entity_type: Optional[ApprovalEntityType] = None,
        request_type: Optional[ApprovalRequestType] = None,
        entity_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[ApprovalRequest], int]:
        """
        Requests visible to the actor, newest first.

        status="all" (or None) disables the status filter.
        """
        filters = [self._visibility(actor, entity_type, entity_id)]
        if status and status != "all":
            try:
                filters.append(ApprovalRequest.status == ApprovalStatus(status))
            except ValueError:
                raise InvalidArgumentError(f"Unknown approval status: {status}")
        if entity_type is not None:
            filters.append(ApprovalRequest.entity_type == entity_type)
        if request_type is not None:
            filters.append(ApprovalRequest.request_type == request_type)
        if entity_id is not None:
            filters.append(ApprovalRequest.entity_id == entity_id)

        total = (await db.execute(
            select(func.count(ApprovalRequest.id)).where(*filters)
        )).scalar_one()

        result = await db.execute(
            select(ApprovalRequest)
            .where(*filters)
            .order_by(ApprovalRequest.requested_at.desc(), ApprovalRequest.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return result.scalars().all(), total

    async def get_request(self, db: AsyncSession, actor: Actor, request_id: int) -> Tuple[ApprovalRequest, Optional[Dict]]:
        """
        One request with the current state of its entity.

        Returns:
            (request, current entity snapshot or None if deleted)
        """
        request = await db.get(ApprovalRequest, request_id)
        if request is None:
            raise ResourceNotFoundError("Approval request", request_id)

        visible = request.requested_by == actor.user_id or actor.can_approve(request.request_type)
        if not visible and request.entity_type == ApprovalEntityType.ORDER:
            order = await db.get(Order, request.entity_id)
            visible = order is not None and actor.can_modify_order(order)
        if not visible:
            raise InsufficientPermissionsError(
                "You are not allowed to view this approval request",
                details={"approval_request_id": request_id},
            )

        return request, await self.current_state(db, request)
