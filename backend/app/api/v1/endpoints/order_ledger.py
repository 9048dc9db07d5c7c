"""
Sub-ledger row endpoints.

Receipts, payments, profits and service charges share one draft lifecycle:
drafts can be edited or deleted, confirmation posts to the row's account.
"""

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.core.dependencies import get_current_actor, get_file_storage
from backend.app.core.permissions import Actor
from backend.app.domain.orders.sub_ledger import DOCUMENT_KINDS, OrderSubLedger, SubLedgerKind
from backend.app.schemas.order_ledger import (
    ConfirmResponse,
    DocumentRowResponse,
    DocumentRowUpdate,
    MarginRowResponse,
    MarginRowUpdate,
    RowDeleteResponse,
)
from backend.app.services.file_storage import FileStorage


def build_router(kind: SubLedgerKind, prefix: str) -> APIRouter:
    """Draft edit/delete/confirm routes for one row kind."""
    is_document = kind in DOCUMENT_KINDS
    update_schema = DocumentRowUpdate if is_document else MarginRowUpdate
    response_schema = DocumentRowResponse if is_document else MarginRowResponse

    router = APIRouter(prefix=prefix, tags=[f"Order {kind.title}s"])

    @router.put("/{row_id}", response_model=response_schema, name=f"update_{kind.value}")
    async def update_row(
        payload: update_schema,
        row_id: int = Path(..., description=f"{kind.title} ID"),
        actor: Actor = Depends(get_current_actor),
        db: AsyncSession = Depends(get_db),
        storage: FileStorage = Depends(get_file_storage)
    ):
        fields = payload.model_dump(exclude_unset=True)
        if "image_path" in fields:
            fields["image_path"] = storage.normalize(fields["image_path"])

        row, replaced_image = await OrderSubLedger.update_draft(db, actor, kind, row_id, fields)
        await db.commit()
        storage.delete_many([replaced_image])
        await db.refresh(row)
        return row

    @router.delete("/{row_id}", response_model=RowDeleteResponse, name=f"delete_{kind.value}")
    async def delete_row(
        row_id: int = Path(..., description=f"{kind.title} ID"),
        actor: Actor = Depends(get_current_actor),
        db: AsyncSession = Depends(get_db),
        storage: FileStorage = Depends(get_file_storage)
    ):
        image_path = await OrderSubLedger.delete_draft(db, actor, kind, row_id)
        await db.commit()
        storage.delete_many([image_path])
        return {"success": True, "row_id": row_id}

    @router.post("/{row_id}/confirm", response_model=ConfirmResponse, name=f"confirm_{kind.value}")
    async def confirm_row(
        row_id: int = Path(..., description=f"{kind.title} ID"),
        actor: Actor = Depends(get_current_actor),
        db: AsyncSession = Depends(get_db)
    ):
        """Confirm the draft and post it; flex payments may report an excess."""
        row, excess = await OrderSubLedger.confirm(db, actor, kind, row_id)
        await db.commit()
        return {"success": True, "row_id": row.id, "status": row.status, "flex_excess": excess}

    return router


receipts_router = build_router(SubLedgerKind.RECEIPT, "/receipts")
payments_router = build_router(SubLedgerKind.PAYMENT, "/payments")
profits_router = build_router(SubLedgerKind.PROFIT, "/profits")
service_charges_router = build_router(SubLedgerKind.SERVICE_CHARGE, "/service-charges")
