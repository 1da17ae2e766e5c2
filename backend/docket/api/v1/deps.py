# docket/api/v1/deps.py

from datetime import datetime

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from docket.core.config import settings
from docket.db.database import get_db
from docket.db.models import Case, User, UserRole
from docket.services.case_access import get_case_or_404
from docket.utils.exceptions import UnauthorizedError

security = HTTPBearer()

# ============================================================================
# JWT Dependency
# ============================================================================

def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _user_id_from_token(token: str) -> int:
    """Decode an identity-service token into the numeric user id it names."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise _unauthorized("Invalid token")

    exp = payload.get("exp")
    if exp and datetime.utcfromtimestamp(exp) < datetime.utcnow():
        raise _unauthorized("Token expired")

    # Accept either "user_id" or the standard "sub"
    subject = payload.get("user_id") or payload.get("sub")
    try:
        return int(subject)
    except (TypeError, ValueError):
        raise _unauthorized("Invalid token")


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Resolve the bearer token to an active user.
    """
    user = db.query(User).filter(User.id == _user_id_from_token(credentials.credentials)).first()
    if not user:
        raise _unauthorized("User not found")

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated"
        )
    return user


# ============================================================================
# Role Dependencies
# ============================================================================

def _require_role(role: UserRole):
    def dependency(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role != role:
            raise UnauthorizedError(f"{role.value.capitalize()} access required")
        return current_user
    return dependency


require_admin = _require_role(UserRole.admin)
require_attorney = _require_role(UserRole.attorney)
require_juror = _require_role(UserRole.juror)


def get_case(case_id: int, db: Session = Depends(get_db)) -> Case:
    """Path dependency: live (non-deleted) case or 404."""
    return get_case_or_404(db, case_id)
