"""
Notification API Endpoints.
"""

import asyncio
import json
import logging
from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.core.dependencies import get_connection_registry, get_current_actor
from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.core.permissions import Actor
from backend.app.services.notification_service import ConnectionRegistry, NotificationService
from backend.app.schemas.notification import MarkReadResponse, NotificationListResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])

# Keeps idle proxies from closing the stream
HEARTBEAT_SECONDS = 30


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """List current user's notifications."""
    notifications = await NotificationService.list_for_user(db, actor.user_id, unread_only, limit, offset)
    return {
        "notifications": notifications,
        "unread_count": await NotificationService.unread_count(db, actor.user_id),
    }


@router.get("/stream")
async def stream_notifications(
    request: Request,
    actor: Actor = Depends(get_current_actor),
    connections: ConnectionRegistry = Depends(get_connection_registry)
):
    """Server-sent events: one `notification` event per delivered message."""
    queue = connections.register(actor.user_id)

    async def event_stream():
        try:
            yield f"event: connected\ndata: {json.dumps({'user_id': actor.user_id})}\n\n"
            while not await request.is_disconnected():
                try:
                    payload = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
                    continue
                yield f"event: notification\ndata: {json.dumps(payload)}\n\n"
        finally:
            connections.deregister(actor.user_id, queue)
            logger.debug("SSE stream closed for user %s", actor.user_id)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.patch("/read-all", response_model=MarkReadResponse)
async def mark_all_notifications_read(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Mark all notifications as read."""
    count = await NotificationService.mark_all_read(db, actor.user_id)
    await db.commit()
    return {"success": True, "updated": count}


@router.patch("/{notification_id}/read", response_model=MarkReadResponse)
async def mark_notification_read(
    notification_id: int = Path(...),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Mark a specific notification as read."""
    success = await NotificationService.mark_read(db, notification_id, actor.user_id)
    if not success:
        raise ResourceNotFoundError("Notification", notification_id)

    await db.commit()
    return {"success": True, "updated": 1}
