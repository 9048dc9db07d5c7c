"""
Notification Service.

Stores notifications in the request's transaction and delivers them after
commit: SSE push through the connection registry, optional redis fan-out,
optional webhook. Delivery never fails or delays the ledger transaction.
"""

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx
from sqlalchemy import desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.reliability import CircuitBreaker, CircuitOpenError
from backend.app.models.notification import Notification, NotificationType

logger = logging.getLogger(__name__)

OUTBOX_KEY = "notification_outbox"


class ConnectionRegistry:
    """
    Live SSE connections keyed by user id.

    A user may hold several connections (tabs); each gets its own queue.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._queues: Dict[int, Set[asyncio.Queue]] = defaultdict(set)

    def register(self, user_id: int) -> asyncio.Queue:
        queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._queues[user_id].add(queue)
        logger.debug("SSE connection registered for user %s", user_id)
        return queue

    def deregister(self, user_id: int, queue: asyncio.Queue) -> None:
        queues = self._queues.get(user_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._queues[user_id]

    def connection_count(self, user_id: int) -> int:
        return len(self._queues.get(user_id, ()))

    def push(self, user_id: int, payload: Dict[str, Any]) -> int:
        """Queue payload on every connection of the user; returns deliveries."""
        delivered = 0
        for queue in list(self._queues.get(user_id, ())):
            try:
                queue.put_nowait(payload)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("SSE queue full for user %s, dropping notification", user_id)
        return delivered


def serialize_notification(notification: Notification) -> Dict[str, Any]:
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "type": notification.type.value,
        "title": notification.title,
        "message": notification.message,
        "entity_type": notification.entity_type,
        "entity_id": notification.entity_id,
        "metadata": notification.metadata_payload or {},
        "is_read": notification.is_read,
        "created_at": (notification.created_at or datetime.now(timezone.utc)).isoformat(),
    }


class NotificationService:

    def __init__(
        self,
        connections: ConnectionRegistry,
        redis=None,
        redis_channel: str = "notifications",
        webhook_enabled: bool = False,
        webhook_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        webhook_timeout: float = 5.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.connections = connections
        self.redis = redis
        self.redis_channel = redis_channel
        self.webhook_enabled = webhook_enabled
        self.webhook_url = webhook_url
        self.webhook_secret = webhook_secret
        self.webhook_timeout = webhook_timeout
        self.breaker = breaker or CircuitBreaker(failure_threshold=5, reset_timeout=60)
        self._tasks: Set[asyncio.Task] = set()

    async def notify(
        self,
        db: AsyncSession,
        user_ids: Iterable[int],
        type: NotificationType,
        title: str,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> List[Notification]:
        """Create one notification per recipient and queue it for delivery."""
        notifications = [
            Notification(
                user_id=uid,
                type=type,
                title=title,
                message=message,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata_payload=metadata,
            )
            for uid in dict.fromkeys(user_ids)
        ]
        if not notifications:
            return []

        db.add_all(notifications)
        await db.flush()  # Caller commits

        outbox = db.info.setdefault(OUTBOX_KEY, [])
        outbox.extend(serialize_notification(n) for n in notifications)
        return notifications

    async def dispatch_outbox(self, db: AsyncSession) -> int:
        """
        Deliver everything queued on the session. Call only after commit.

        Returns:
            Number of notifications dispatched
        """
        payloads = db.info.pop(OUTBOX_KEY, [])
        if not payloads:
            return 0

        for payload in payloads:
            self.connections.push(payload["user_id"], payload)
            if self.redis is not None:
                self._spawn(self._publish(payload))

        # One webhook message per event, not per recipient
        if self.webhook_enabled:
            self._spawn(self._push_webhook(payloads[0]))

        return len(payloads)

    @staticmethod
    def discard_outbox(db: AsyncSession) -> None:
        db.info.pop(OUTBOX_KEY, None)

    async def drain(self) -> None:
        """Wait for in-flight background deliveries."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _publish(self, payload: Dict[str, Any]) -> None:
        try:
            await self.redis.publish(self.redis_channel, json.dumps(payload))
        except Exception as e:
            logger.warning("Failed to publish notification %s to redis: %s", payload.get("id"), e)

    async def _push_webhook(self, payload: Dict[str, Any]) -> None:
        try:
            await self.breaker.call(self._post_webhook, payload)
            logger.info("Notification pushed to webhook: %s", payload["type"])
        except CircuitOpenError:
            logger.warning("Webhook circuit open, notification %s not pushed", payload.get("id"))
        except Exception as e:
            logger.warning("Failed to push notification to webhook: %s", e)

    async def _post_webhook(self, payload: Dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self.webhook_timeout) as client:
            response = await client.post(
                self.webhook_url,
                json=payload,
                headers={"X-Webhook-Secret": self.webhook_secret or ""},
            )
            response.raise_for_status()

    # Read / state management

    @staticmethod
    async def list_for_user(
        db: AsyncSession,
        user_id: int,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0
    ) -> List[Notification]:
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read == False)  # noqa: E712
        query = query.order_by(desc(Notification.created_at), desc(Notification.id)).offset(offset).limit(limit)
        result = await db.execute(query)
        return result.scalars().all()

    @staticmethod
    async def unread_count(db: AsyncSession, user_id: int) -> int:
        result = await db.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id,
                Notification.is_read == False  # noqa: E712
            )
        )
        return result.scalar_one()

    @staticmethod
    async def mark_read(db: AsyncSession, notification_id: int, user_id: int) -> bool:
        """Mark a notification as read."""
        stmt = update(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id
        ).values(
            is_read=True,
            read_at=datetime.now(timezone.utc)
        )
        result = await db.execute(stmt)
        return result.rowcount > 0

    @staticmethod
    async def mark_all_read(db: AsyncSession, user_id: int) -> int:
        """Mark all notifications for user as read."""
        stmt = update(Notification).where(
            Notification.user_id == user_id,
            Notification.is_read == False  # noqa: E712
        ).values(
            is_read=True,
            read_at=datetime.now(timezone.utc)
        )
        result = await db.execute(stmt)
        return result.rowcount
