"""
Request-scoped dependencies for FastAPI.

Identity arrives already authenticated in the actor header; this module
turns it into an Actor and exposes the app-level collaborators.
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.core.config import settings
from backend.app.core.exceptions import AuthenticationError
from backend.app.core.permissions import Actor, load_actor
from backend.app.db.session import get_db
from backend.app.domain.approvals.workflow import ApprovalWorkflow


async def get_current_actor(
    request: Request,
    db: AsyncSession = Depends(get_db)
) -> Actor:
    """
    FastAPI dependency resolving the caller.

    Checks:
    1. Actor header is present and an integer
    2. User exists and is active
    3. Role permissions resolved into a capability set

    Raises:
        AuthenticationError: 401 if the header is missing or names no user
    """
    raw_id = request.headers.get(settings.actor_header)
    if not raw_id:
        raise AuthenticationError(f"Missing {settings.actor_header} header")

    try:
        user_id = int(raw_id)
    except ValueError:
        raise AuthenticationError(f"Invalid {settings.actor_header} header")

    return await load_actor(db, user_id)


def get_notifier(request: Request):
    """NotificationService built at startup."""
    return request.app.state.notifier


def get_file_storage(request: Request):
    """FileStorage built at startup."""
    return request.app.state.file_storage


def get_connection_registry(request: Request):
    return request.app.state.connections


def get_approval_workflow(
    notifier=Depends(get_notifier),
    storage=Depends(get_file_storage)
) -> ApprovalWorkflow:
    return ApprovalWorkflow(notifier, storage)
