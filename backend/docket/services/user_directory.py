"""
User lookups used for notification fan-out.

"Which admin hears about attorney feedback" is configuration
(RESCHEDULE_NOTIFY_ADMIN_ID); without it the lowest-id active admin is used.
"""
from __future__ import annotations

from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from docket.core.config import settings
from docket.db.models import User, UserRole


class UserDirectory:

    def __init__(self, notify_admin_id: Optional[int] = None) -> None:
        self.notify_admin_id = notify_admin_id

    def active_users(self, db: Session, roles: Iterable[UserRole]) -> List[User]:
        return (
            db.query(User)
            .filter(User.role.in_(list(roles)), User.is_active == True)  # noqa: E712
            .order_by(User.id.asc())
            .all()
        )

    def active_admins(self, db: Session) -> List[User]:
        return self.active_users(db, [UserRole.admin])

    def first_active_admin(self, db: Session) -> Optional[User]:
        if self.notify_admin_id is not None:
            admin = (
                db.query(User)
                .filter(
                    User.id == self.notify_admin_id,
                    User.role == UserRole.admin,
                    User.is_active == True,  # noqa: E712
                )
                .first()
            )
            if admin is not None:
                return admin
        admins = self.active_admins(db)
        return admins[0] if admins else None


user_directory = UserDirectory(notify_admin_id=settings.RESCHEDULE_NOTIFY_ADMIN_ID)
