"""CRUD operations for users (the Identity Store)."""

import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from linkbio.core.security import hash_password
from linkbio.models.user import User
from linkbio.services.identity.errors import (
    EmailTaken,
    IdentityConflict,
    IdentityStoreError,
    ProviderIdTaken,
    UsernameTaken,
)
from linkbio.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

# Postgres reports the constraint name, SQLite reports "users.<column>"
_CONFLICT_MARKERS = (
    (ProviderIdTaken, ("uq_users_provider_id", "users.provider_id")),
    (UsernameTaken, ("uq_users_username", "users.username")),
    (EmailTaken, ("uq_users_email", "users.email")),
)

_UPDATABLE_FIELDS = frozenset(
    {"username", "email", "name", "avatar", "provider_id", "password_hash", "is_active"}
)


def classify_integrity_error(exc: IntegrityError) -> IdentityConflict:
    """Map a unique-constraint violation to the typed conflict it represents."""
    message = str(exc.orig) if exc.orig is not None else str(exc)
    for error_cls, markers in _CONFLICT_MARKERS:
        if any(marker in message for marker in markers):
            return error_cls()
    return IdentityConflict(message)


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return email.strip().lower()


class UserCRUD:
    """CRUD operations for User model.

    Uniqueness is never pre-checked here; the database constraints decide and
    the resulting IntegrityError is translated into a typed conflict.
    """

    @staticmethod
    async def get_by_id(db: AsyncSession, user_id: UUID) -> Optional[User]:
        """Get user by ID."""
        result = await db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_username(db: AsyncSession, username: str) -> Optional[User]:
        """Get user by username."""
        result = await db.execute(select(User).where(User.username == username.lower()))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_email(db: AsyncSession, email: str) -> Optional[User]:
        """Get user by email."""
        result = await db.execute(select(User).where(User.email == normalize_email(email)))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_provider_id(db: AsyncSession, provider_id: str) -> Optional[User]:
        """Get user by external identity provider subject."""
        result = await db.execute(select(User).where(User.provider_id == provider_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def create(
        db: AsyncSession,
        username: str,
        email: Optional[str] = None,
        name: str = "",
        avatar: Optional[str] = None,
        provider_id: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        """
        Create a new user in a single commit.

        Raises:
            UsernameTaken, EmailTaken, ProviderIdTaken: on a uniqueness violation
            IdentityStoreError: on any other database failure
        """
        user = User(
            username=username.lower(),
            email=normalize_email(email),
            name=name or "",
            avatar=avatar,
            provider_id=provider_id,
            password_hash=hash_password(password) if password else None,
        )
        db.add(user)
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            raise classify_integrity_error(exc) from exc
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error("Identity create failed: %s", type(exc).__name__)
            raise IdentityStoreError() from exc
        await db.refresh(user)
        return user

    @staticmethod
    async def update(db: AsyncSession, user: User, **fields: Any) -> User:
        """
        Update a user's mutable fields.

        Raises:
            ValueError: for a field that cannot be updated
            UsernameTaken, EmailTaken, ProviderIdTaken: on a uniqueness violation
            IdentityStoreError: on any other database failure
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        if "username" in fields:
            fields["username"] = fields["username"].lower()
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])

        for key, value in fields.items():
            setattr(user, key, value)
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            raise classify_integrity_error(exc) from exc
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error("Identity update failed: %s", type(exc).__name__)
            raise IdentityStoreError() from exc
        await db.refresh(user)
        return user

    @staticmethod
    async def update_last_login(db: AsyncSession, user_id: UUID) -> None:
        """Update user's last login timestamp."""
        result = await db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if user:
            user.last_login_at = utc_now()
            await db.commit()


user_crud = UserCRUD()
