from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

from django.utils import timezone


@dataclass(frozen=True)
class OperationContext:
    """Who is acting, through which cash drawer shift, and at what instant.

    Passed explicitly into every service call. ``now`` is fixed when the
    context is built so one operation sees a single clock reading.
    """

    actor: Any = None
    shift: Any = None
    now: datetime = field(default_factory=timezone.now)

    @property
    def actor_id(self) -> Optional[int]:
        return getattr(self.actor, "pk", None)

    @property
    def actor_name(self) -> str:
        if self.actor is None:
            return "System"
        full_name = self.actor.get_full_name() if hasattr(self.actor, "get_full_name") else ""
        return full_name or getattr(self.actor, "username", "") or "System"

    @property
    def is_admin(self) -> bool:
        actor = self.actor
        if actor is None:
            return False
        return bool(getattr(actor, "is_superuser", False) or getattr(actor, "role", None) == "admin")

    def with_shift(self, shift) -> "OperationContext":
        return replace(self, shift=shift)


def context_for(request, with_shift: bool = True) -> OperationContext:
    """Build the context for an API request: the caller and their open shift."""
    from pos.services import open_shift_for_user

    user = request.user if request.user and request.user.is_authenticated else None
    shift = open_shift_for_user(user) if with_shift and user is not None else None
    return OperationContext(actor=user, shift=shift)
