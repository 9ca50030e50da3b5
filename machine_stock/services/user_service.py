from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from machine_stock.models.stock_models import User

ROLE_ADMIN = "Admin"
ROLE_MANAGER = "Manager"
ROLE_VIEWER = "Viewer"
ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_VIEWER)
MANAGE_ROLES = {ROLE_ADMIN, ROLE_MANAGER}
DEFAULT_ROLE = ROLE_VIEWER
MIN_PASSWORD_LENGTH = 6


def normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip().capitalize()
    if role in ROLES:
        return role
    return DEFAULT_ROLE


def _normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def _set_password(user: User, password: str) -> None:
    trimmed = str(password or "").strip()
    if len(trimmed) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    salt = secrets.token_hex(16)
    user.PasswordSalt = salt
    user.PasswordHash = _password_hash(trimmed, salt)
    user.PasswordUpdatedAt = int(time.time())


def get_user_by_email(db: Session, email: str) -> User | None:
    key = _normalize_email(email)
    if not key:
        return None
    return db.execute(select(User).where(func.lower(User.Email) == key)).scalars().first()


def upsert_user(db: Session, *, email: str, role: str | None = None, password: str | None = None) -> User:
    key = _normalize_email(email)
    if not key or "@" not in key:
        raise ValueError("A valid email is required.")
    user = get_user_by_email(db, key)
    if user is None:
        if password is None:
            raise ValueError("Password is required for a new user.")
        user = User(Email=key, Role=normalize_role(role), IsActive=True, CreatedAt=datetime.now())
        db.add(user)
    elif role is not None:
        user.Role = normalize_role(role)
    if password is not None:
        _set_password(user, password)
    user.UpdatedAt = datetime.now()
    db.commit()
    db.refresh(user)
    return user


def verify_credentials(db: Session, email: str, password: str) -> User | None:
    user = get_user_by_email(db, email)
    if user is None or not user.IsActive:
        return None
    if not user.PasswordHash or not user.PasswordSalt:
        return None
    candidate = _password_hash(str(password or "").strip(), user.PasswordSalt)
    if not hmac.compare_digest(candidate, user.PasswordHash):
        return None
    return user


def serialize_user(user: User) -> dict[str, Any]:
    return {
        "userID": user.UserID,
        "email": user.Email,
        "role": normalize_role(user.Role),
        "isActive": bool(user.IsActive),
    }
