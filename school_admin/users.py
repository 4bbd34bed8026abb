import logging
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from .audit import log_event
from .auth import DEFAULT_ROLES
from .config import settings
from .models import Role, User
from .security import create_access_token, hash_password, verify_password

logger = logging.getLogger(__name__)


def seed_roles_and_admin(db: Session) -> None:
    for name, description in DEFAULT_ROLES.items():
        if not db.query(Role).filter(Role.name == name).first():
            db.add(Role(name=name, description=description))
    db.flush()

    if not db.query(User).filter(User.username == settings.admin_username).first():
        admin_role = db.query(Role).filter(Role.name == "admin").one()
        db.add(User(
            username=settings.admin_username,
            full_name="System Administrator",
            password_hash=hash_password(settings.admin_password),
            roles=[admin_role],
        ))
        db.flush()
        logger.info(f"Seeded administrator account '{settings.admin_username}'")


def login_user(db: Session, *, username: str, password: str) -> tuple[str, User]:
    user = db.query(User).filter(User.username == username.strip()).first()
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    token = create_access_token(subject=user.username, roles=user.role_names)
    return token, user


def _roles_by_name(db: Session, names: list[str]) -> list[Role]:
    roles = db.query(Role).filter(Role.name.in_(names)).all() if names else []
    missing = set(names) - {role.name for role in roles}
    if missing:
        raise HTTPException(status_code=400, detail=f"Unknown roles: {', '.join(sorted(missing))}")
    return roles


def register_user(
    db: Session,
    *,
    username: str,
    password: str,
    email: Optional[str] = None,
    full_name: Optional[str] = None,
    roles: list[str] = (),
    actor_user_id: Optional[int] = None,
) -> User:
    username = username.strip()
    if db.query(User).filter(User.username == username).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Username already exists")
    user = User(
        username=username,
        email=email,
        full_name=full_name,
        password_hash=hash_password(password),
        roles=_roles_by_name(db, list(roles)),
    )
    db.add(user)
    db.flush()
    log_event(db, user_id=actor_user_id, action="CREATE", table_name="users", record_id=user.id,
              new_values={"username": username, "roles": list(roles)})
    db.commit()
    db.refresh(user)
    return user


def change_password(db: Session, user: User, *, current_password: str, new_password: str) -> None:
    if not verify_password(current_password, user.password_hash):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    user.password_hash = hash_password(new_password)
    log_event(db, user_id=user.id, action="UPDATE", table_name="users", record_id=user.id,
              new_values={"password": "changed"})
    db.commit()


def list_users(db: Session) -> list[User]:
    return db.query(User).order_by(User.username).all()


def list_roles(db: Session) -> list[Role]:
    return db.query(Role).order_by(Role.name).all()


def create_role(db: Session, *, name: str, description: Optional[str] = None,
                actor_user_id: Optional[int] = None) -> Role:
    name = name.strip().lower()
    if db.query(Role).filter(Role.name == name).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Role already exists")
    role = Role(name=name, description=description)
    db.add(role)
    db.flush()
    log_event(db, user_id=actor_user_id, action="CREATE", table_name="roles", record_id=role.id,
              new_values={"name": name})
    db.commit()
    db.refresh(role)
    return role


def delete_role(db: Session, role_id: int, *, actor_user_id: Optional[int] = None) -> None:
    role = db.get(Role, role_id)
    if not role:
        raise HTTPException(status_code=404, detail="Role not found")
    if role.users:
        raise HTTPException(status_code=400, detail="Role is assigned to users")
    log_event(db, user_id=actor_user_id, action="DELETE", table_name="roles", record_id=role.id,
              old_values={"name": role.name})
    db.delete(role)
    db.commit()
