from collections.abc import Callable

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from .database import get_db_session
from .models import User
from .security import AuthError, decode_access_token


ADMIN_ROLE = "admin"
DEFAULT_ROLES = {
    "admin": "Full access to every module",
    "accountant": "Ledger, reports and student finance",
    "registrar": "Students and fee payments",
    "timetabler": "Period templates and timetable generation",
    "teacher": "Read-only timetable access",
}


def _parse_token(auth_header: str | None) -> str:
    if not auth_header:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Authorization header")
    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid auth scheme")
    return parts[1].strip()


def get_current_user(
    authorization: str | None = Header(default=None, alias="Authorization"),
    db: Session = Depends(get_db_session),
) -> User:
    token = _parse_token(authorization)
    try:
        payload = decode_access_token(token)
    except AuthError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

    user = db.query(User).filter(User.username == payload["sub"]).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user")
    return user


def require_roles(*allowed_roles: str) -> Callable:
    """Dependency factory; the admin role passes every check."""

    def dependency(current_user: User = Depends(get_current_user)) -> User:
        held = {role.name for role in current_user.roles if role.is_active}
        if ADMIN_ROLE in held:
            return current_user
        if not held.intersection(allowed_roles):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role privileges")
        return current_user

    return dependency
