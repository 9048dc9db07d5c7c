"""
Capability resolution.

A role's permission JSON is resolved once per request into an immutable
Actor that is passed explicitly into the domain layer.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import AuthenticationError
from backend.app.models.enums import ApprovalRequestType, Capability
from backend.app.models.user import Role, User


REQUEST_CAPABILITY = {
    ApprovalRequestType.EDIT: Capability.REQUEST_ORDER_EDIT,
    ApprovalRequestType.DELETE: Capability.REQUEST_ORDER_DELETE,
}

APPROVE_CAPABILITY = {
    ApprovalRequestType.EDIT: Capability.APPROVE_ORDER_EDIT,
    ApprovalRequestType.DELETE: Capability.APPROVE_ORDER_DELETE,
}


def resolve_capabilities(permissions: Optional[dict]) -> FrozenSet[Capability]:
    """Read the truthy action flags out of a role permission document."""
    actions = (permissions or {}).get("actions") or {}
    return frozenset(cap for cap in Capability if actions.get(cap.value))


@dataclass(frozen=True)
class Actor:
    """The authenticated caller and what they may do."""

    user_id: int
    role: Optional[str] = None
    capabilities: FrozenSet[Capability] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return Capability.DELETE_ORDER in self.capabilities

    def has(self, capability: Capability) -> bool:
        # Admins pass every capability check
        return self.is_admin or capability in self.capabilities

    def can_request(self, request_type: ApprovalRequestType) -> bool:
        return self.has(REQUEST_CAPABILITY[request_type])

    def can_approve(self, request_type: ApprovalRequestType) -> bool:
        return self.has(APPROVE_CAPABILITY[request_type])

    def can_modify_order(self, order) -> bool:
        """Creator, handler or admin."""
        if self.is_admin:
            return True
        return self.user_id in (order.created_by, order.handler_id)


async def load_actor(db: AsyncSession, user_id: int) -> Actor:
    """
    Resolve a user id to an Actor.

    Raises:
        AuthenticationError: unknown or inactive user
    """
    result = await db.execute(
        select(User, Role).outerjoin(Role, Role.id == User.role_id).where(User.id == user_id)
    )
    row = result.first()
    if row is None:
        raise AuthenticationError("Unknown user")

    user, role = row
    if not user.is_active:
        raise AuthenticationError("User account is inactive")

    return Actor(
        user_id=user.id,
        role=role.name if role else None,
        capabilities=resolve_capabilities(role.permissions if role else None),
    )


async def users_with_capability(db: AsyncSession, capability: Capability) -> List[int]:
    """Ids of active users whose role grants the capability (admins included)."""
    result = await db.execute(
        select(User.id, Role.permissions)
        .join(Role, Role.id == User.role_id)
        .where(User.is_active == True)  # noqa: E712
        .order_by(User.id)
    )
    user_ids = []
    for user_id, permissions in result.all():
        caps = resolve_capabilities(permissions)
        if capability in caps or Capability.DELETE_ORDER in caps:
            user_ids.append(user_id)
    return user_ids
