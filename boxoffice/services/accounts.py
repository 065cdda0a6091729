"""
Customer accounts: password hashing and session helpers.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.models import User
from boxoffice.services.orders import normalize_email

logger = logging.getLogger(__name__)

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SESSION_USER_KEY = "user_id"


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return _pwd_context.verify(plain, hashed)


async def register_user(
    session: AsyncSession, name: str, email: str, password: str
) -> Optional[User]:
    """Create an account; returns None if the e-mail is already taken."""
    email = normalize_email(email)
    user = User(name=name.strip(), email=email, password_hash=hash_password(password))
    session.add(user)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        logger.info("Registration refused: e-mail %s already in use", email)
        return None
    await session.commit()
    return user


async def authenticate(session: AsyncSession, email: str, password: str) -> Optional[User]:
    user = (
        await session.execute(select(User).where(User.email == normalize_email(email)))
    ).scalar_one_or_none()
    if user is None or not verify_password(password, user.password_hash):
        return None
    return user


# ── Session user helpers ─────────────────────────────────────────────────────

def set_user_session(request: Request, user_id: str) -> None:
    request.session[SESSION_USER_KEY] = user_id


def clear_user_session(request: Request) -> None:
    request.session.pop(SESSION_USER_KEY, None)


def get_session_user_id(request: Request) -> Optional[str]:
    return request.session.get(SESSION_USER_KEY)
