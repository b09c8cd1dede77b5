"""
shared/utils/permissions.py
Role-based capabilities for the inspection module.
All role-hierarchy decisions live here; services ask the actor what it may do.
"""

import uuid
from dataclasses import dataclass, field
from typing import Optional

from shared.models.models import User, UserRole
from shared.utils.errors import ForbiddenError

MANAGER_ROLES = frozenset({UserRole.SUPERUSER, UserRole.ADMIN})
AGENCY_ROLES = frozenset({UserRole.AGENCY_ADMIN, UserRole.AGENCY_USER})

# Recipient fallback order when a property has no contact with an email
AGENCY_RECIPIENT_PRIORITY = (
    UserRole.AGENCY_ADMIN,
    UserRole.AGENCY_USER,
    UserRole.ADMIN,
    UserRole.SUPERUSER,
)


@dataclass(frozen=True)
class InspectionPermissions:
    role: UserRole

    @property
    def is_manager(self) -> bool:
        return self.role in MANAGER_ROLES

    @property
    def is_agency_member(self) -> bool:
        return self.role in AGENCY_ROLES

    def can_manage_schedules(self) -> bool:
        return self.is_manager

    def can_send_notifications(self) -> bool:
        return self.is_manager

    def can_view_bookings(self) -> bool:
        return self.is_manager or self.is_agency_member

    def can_confirm_bookings(self) -> bool:
        return self.is_manager

    def can_reject_bookings(self) -> bool:
        return self.is_manager

    def can_reschedule_bookings(self) -> bool:
        return self.is_manager


@dataclass(frozen=True)
class Actor:
    """Resolved caller identity handed to services by the auth layer."""
    id: uuid.UUID
    role: UserRole
    agency_id: Optional[uuid.UUID] = None
    permissions: InspectionPermissions = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "permissions", InspectionPermissions(self.role))

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(id=user.id, role=user.role, agency_id=user.agency_id)

    def require(self, allowed: bool, action: str) -> None:
        if not allowed:
            raise ForbiddenError(f"Role '{self.role.value}' may not {action}")
