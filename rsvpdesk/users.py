"""User records, password hashing and API tokens."""

from __future__ import annotations

import logging
import secrets
from typing import Sequence

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .authz import authorizer
from .errors import NotFoundError, ValidationError
from .models import ROLE_ADMIN, ROLES, ROLE_USER, User
from .utils import (
    is_object_id,
    is_valid_email,
    random_username,
    schema_error_message,
    utcnow,
)

logger = logging.getLogger("uvicorn.error")

PASSWORD_MIN_LENGTH = 6

PASSWORD_HASHER = PasswordHasher()


def hash_password(password: str) -> str:
    return PASSWORD_HASHER.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    try:
        return PASSWORD_HASHER.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def new_api_token() -> str:
    return secrets.token_urlsafe(32)


def _normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def get_user(session: Session, user_id: str | None) -> User | None:
    if not user_id:
        return None
    return session.get(User, user_id)


def get_user_by_email(session: Session, email: str | None) -> User | None:
    normalized = _normalize_email(email)
    if not normalized:
        return None
    stmt = select(User).where(func.lower(User.email) == normalized)
    return session.scalars(stmt).first()


def get_user_by_token(session: Session, token: str | None) -> User | None:
    if not token:
        return None
    stmt = select(User).where(User.api_token == token)
    return session.scalars(stmt).first()


def users_with_notifications(session: Session) -> Sequence[User]:
    stmt = (
        select(User)
        .where(User.receive_email_notifications.is_(True))
        .order_by(User.created_at.asc())
    )
    return session.scalars(stmt).all()


def _unique_username(session: Session) -> str:
    while True:
        candidate = random_username()
        exists = session.scalars(select(User.id).where(User.username == candidate)).first()
        if not exists:
            return candidate


def create_user(
    session: Session,
    *,
    name: str,
    email: str,
    password: str,
    role: str = ROLE_USER,
    username: str | None = None,
    receive_email_notifications: bool = True,
    phone: str = "",
    address: str = "",
) -> User:
    """Create and persist a new user."""
    cleaned_name = (name or "").strip()
    normalized_email = _normalize_email(email)
    if not cleaned_name:
        raise ValidationError("Please provide a name")
    if not is_valid_email(normalized_email):
        raise ValidationError("Please provide a valid email")
    if len(password or "") < PASSWORD_MIN_LENGTH:
        raise ValidationError(
            f"Password must be at least {PASSWORD_MIN_LENGTH} characters"
        )
    if role not in ROLES:
        raise ValidationError("Invalid role")
    if get_user_by_email(session, normalized_email):
        raise ValidationError("A user with that email already exists")

    user = User(
        name=cleaned_name,
        email=normalized_email,
        username=username or _unique_username(session),
        password_hash=hash_password(password),
        role=role,
        receive_email_notifications=receive_email_notifications,
        phone=phone,
        address=address,
        api_token=new_api_token(),
    )
    session.add(user)
    session.flush()
    return user


def authenticate(session: Session, email: str, password: str) -> User | None:
    user = get_user_by_email(session, email)
    if not user or not verify_password(user.password_hash, password):
        return None
    return user


def rotate_api_token(session: Session, user: User) -> str:
    user.api_token = new_api_token()
    user.last_modified = utcnow()
    session.add(user)
    session.flush()
    return user.api_token


def ensure_admin(
    session: Session, *, email: str, password: str, name: str = "Admin User"
) -> tuple[User, bool]:
    """Create the configured admin or refresh its password and role.

    Returns the user and whether it was newly created.
    """
    existing = get_user_by_email(session, email)
    if existing is None:
        user = create_user(
            session, name=name, email=email, password=password, role=ROLE_ADMIN
        )
        logger.info("Created admin account %s", user.email)
        return user, True

    if len(password or "") < PASSWORD_MIN_LENGTH:
        raise ValidationError(
            f"Password must be at least {PASSWORD_MIN_LENGTH} characters"
        )
    existing.password_hash = hash_password(password)
    existing.role = ROLE_ADMIN
    existing.last_modified = utcnow()
    session.add(existing)
    session.flush()
    logger.info("Updated admin credentials for %s", existing.email)
    return existing, False


# -------- user management --------


class ProfilePatch(BaseModel):
    """Fields users may change on their own profile."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(None, max_length=120)
    email: str | None = None
    phone: str | None = Field(None, max_length=32)
    address: str | None = Field(None, max_length=255)
    receive_email_notifications: bool | None = None
    password: str | None = None
    current_password: str | None = None


def get_user_or_404(session: Session, user_id: str) -> User:
    if not is_object_id(user_id):
        raise ValidationError("Invalid user ID")
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def list_users(session: Session, admin: User | None) -> list[User]:
    authorizer.require_admin(admin, "Only administrators can list users")
    stmt = select(User).order_by(User.created_at.desc(), User.id.desc())
    return list(session.scalars(stmt).all())


def get_user_profile(session: Session, actor: User | None, user_id: str) -> User:
    """Load a user record for its owner or an admin."""
    if not is_object_id(user_id):
        raise ValidationError("Invalid user ID")
    authorizer.require_user_access(actor, user_id)
    return get_user_or_404(session, user_id)


def set_role(session: Session, admin: User | None, user_id: str, role: str | None) -> User:
    authorizer.require_admin(admin, "Only administrators can change roles")
    if role not in ROLES:
        raise ValidationError("Invalid role value")
    user = get_user_or_404(session, user_id)
    if user.is_admin and role != ROLE_ADMIN:
        admins = session.scalar(
            select(func.count()).select_from(User).where(User.role == ROLE_ADMIN)
        )
        if admins <= 1:
            raise ValidationError("At least one administrator must remain")
    if user.role != role:
        user.role = role
        user.last_modified = utcnow()
        session.flush()
        logger.info("User %s role set to %s by %s", user.id, role, admin.id)
    return user


def update_profile(session: Session, user: User | None, patch: dict) -> User:
    """Apply a partial profile update; roles are changed through :func:`set_role`."""
    authorizer.require_user(user)
    try:
        validated = ProfilePatch.model_validate(patch)
    except SchemaError as exc:
        raise ValidationError(schema_error_message(exc)) from exc
    changes = validated.model_dump(exclude_unset=True)

    if "name" in changes:
        cleaned = (changes["name"] or "").strip()
        if not cleaned:
            raise ValidationError("Please provide a name")
        user.name = cleaned
    if "email" in changes:
        normalized = _normalize_email(changes["email"])
        if not is_valid_email(normalized):
            raise ValidationError("Please provide a valid email")
        if normalized != user.email:
            if get_user_by_email(session, normalized):
                raise ValidationError("Email already in use")
            user.email = normalized
    for field in ("phone", "address"):
        if field in changes:
            setattr(user, field, (changes[field] or "").strip())
    if changes.get("receive_email_notifications") is not None:
        user.receive_email_notifications = changes["receive_email_notifications"]
    if "password" in changes:
        password = changes["password"] or ""
        if not verify_password(user.password_hash, changes.get("current_password") or ""):
            raise ValidationError("Current password is incorrect")
        if len(password) < PASSWORD_MIN_LENGTH:
            raise ValidationError(
                f"Password must be at least {PASSWORD_MIN_LENGTH} characters"
            )
        user.password_hash = hash_password(password)

    user.last_modified = utcnow()
    session.flush()
    logger.info("Profile updated for %s", user.id)
    return user
