"""
Case lookup and ownership checks shared by the case services.
"""
from __future__ import annotations

from sqlalchemy.orm import Session

from docket.db.models import Case, User, UserRole
from docket.utils.exceptions import CaseNotFoundError, UnauthorizedError


def get_case_or_404(db: Session, case_id: int, include_deleted: bool = False) -> Case:
    query = db.query(Case).filter(Case.id == case_id)
    if not include_deleted:
        query = query.filter(Case.is_deleted == False)  # noqa: E712
    case = query.first()
    if case is None:
        raise CaseNotFoundError(case_id)
    return case


def is_owner(case: Case, user: User) -> bool:
    return user.role == UserRole.attorney and case.attorney_id == user.id


def ensure_owner(case: Case, user: User) -> None:
    if not is_owner(case, user):
        raise UnauthorizedError("Not authorized to manage this case")


def ensure_owner_or_admin(case: Case, user: User) -> None:
    if user.role == UserRole.admin:
        return
    ensure_owner(case, user)
