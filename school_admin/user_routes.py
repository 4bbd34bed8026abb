from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .audit import list_events
from .auth import get_current_user, require_roles
from .database import get_db_session
from .models import User
from .schemas import (
    AuditLogOut,
    LoginRequest,
    LoginResponse,
    PasswordChangeRequest,
    RoleCreateRequest,
    RoleOut,
    UserCreateRequest,
    UserOut,
)
from .users import (
    change_password,
    create_role,
    delete_role,
    list_roles,
    list_users,
    login_user,
    register_user,
)

auth_router = APIRouter(prefix="/api/auth", tags=["Auth"])
router = APIRouter(prefix="/api", tags=["Users"])


@auth_router.post("/login", response_model=LoginResponse)
def login(payload: LoginRequest, db: Session = Depends(get_db_session)):
    token, user = login_user(db, username=payload.username, password=payload.password)
    return LoginResponse(access_token=token, user=UserOut.model_validate(user), roles=user.role_names)


@auth_router.get("/me", response_model=UserOut)
def me(current_user: User = Depends(get_current_user)):
    return current_user


@auth_router.post("/change-password")
def update_password(
    payload: PasswordChangeRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
):
    change_password(db, current_user, current_password=payload.current_password, new_password=payload.new_password)
    return {"message": "Password changed successfully"}


@router.get("/users", response_model=list[UserOut])
def users(db: Session = Depends(get_db_session), _: User = Depends(require_roles())):
    return list_users(db)


@router.post("/users", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def add_user(
    payload: UserCreateRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles()),
):
    return register_user(
        db,
        username=payload.username,
        password=payload.password,
        email=payload.email,
        full_name=payload.full_name,
        roles=payload.roles,
        actor_user_id=current_user.id,
    )


@router.get("/roles", response_model=list[RoleOut])
def roles(db: Session = Depends(get_db_session), _: User = Depends(require_roles())):
    return list_roles(db)


@router.post("/roles", response_model=RoleOut, status_code=status.HTTP_201_CREATED)
def add_role(
    payload: RoleCreateRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles()),
):
    return create_role(db, name=payload.name, description=payload.description, actor_user_id=current_user.id)


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_role(role_id: int, db: Session = Depends(get_db_session), current_user: User = Depends(require_roles())):
    delete_role(db, role_id, actor_user_id=current_user.id)


@router.get("/audit", response_model=list[AuditLogOut])
def audit_log(
    table_name: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db_session),
    _: User = Depends(require_roles()),
):
    return list_events(db, table_name=table_name, limit=limit)
