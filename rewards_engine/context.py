# rewards_engine/context.py
from dataclasses import dataclass
from typing import Optional

from rewards_engine.errors import ValidationFailure


@dataclass(frozen=True)
class CallerContext:
    """Pre-authorized caller, resolved by the API layer."""

    actorID: Optional[int] = None
    isAdmin: bool = False
    reason: Optional[str] = None

    def requireAdmin(self, operation: str):
        if not self.isAdmin:
            raise ValidationFailure(
                f"{operation} requires an administrative caller",
                actorID=self.actorID
            )


SYSTEM = CallerContext(actorID=None, isAdmin=True, reason="system")
