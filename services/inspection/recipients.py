"""
services/inspection/recipients.py
Who receives the booking invitation for a property:
1) the first active property contact with an email
2) otherwise an active user of the property's agency, by role priority
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import BookerType, Contact, Property, User, UserRole
from shared.utils.permissions import AGENCY_RECIPIENT_PRIORITY


@dataclass(frozen=True)
class Recipient:
    type: BookerType
    email: str
    name: Optional[str] = None
    contact_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    role: Optional[UserRole] = None


def _role_rank(user: User) -> int:
    return AGENCY_RECIPIENT_PRIORITY.index(user.role)


async def resolve_recipient(db: AsyncSession, prop: Property) -> Optional[Recipient]:
    result = await db.execute(
        select(Contact)
        .where(
            Contact.property_id == prop.id,
            Contact.is_active.is_(True),
            Contact.email.is_not(None),
            Contact.email != "",
        )
        .order_by(Contact.created_at)
        .limit(1)
    )
    contact = result.scalar_one_or_none()
    if contact:
        return Recipient(
            type=BookerType.CONTACT,
            email=contact.email,
            name=contact.name,
            contact_id=contact.id,
        )

    if prop.agency_id is None:
        return None

    result = await db.execute(
        select(User).where(
            User.agency_id == prop.agency_id,
            User.is_active.is_(True),
            User.email.is_not(None),
            User.email != "",
            User.role.in_(AGENCY_RECIPIENT_PRIORITY),
        )
    )
    users = sorted(result.scalars().all(), key=_role_rank)
    if not users:
        return None

    user = users[0]
    return Recipient(
        type=BookerType.AGENCY_USER,
        email=user.email,
        name=user.name,
        user_id=user.id,
        role=user.role,
    )
