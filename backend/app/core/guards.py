"""
Security guards for capability-based access control.

Provides dependencies for protecting endpoints.
"""

from fastapi import Depends
from backend.app.core.dependencies import get_current_actor
from backend.app.core.exceptions import InsufficientPermissionsError
from backend.app.core.permissions import Actor
from backend.app.models.enums import Capability


def require_capability(capability: Capability):
    """
    Dependency factory for capability-based access control.

    Usage:
        @router.delete("/orders/{order_id}")
        async def delete_order(actor: Actor = Depends(require_capability(Capability.DELETE_ORDER))):
            ...

    Raises:
        InsufficientPermissionsError 403 if the actor lacks the capability
    """
    async def capability_checker(actor: Actor = Depends(get_current_actor)) -> Actor:
        if not actor.has(capability):
            raise InsufficientPermissionsError(
                f"Access denied. Required capability: {capability.value}",
                details={"capability": capability.value},
            )
        return actor

    return capability_checker


require_admin = require_capability(Capability.DELETE_ORDER)
