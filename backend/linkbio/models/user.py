"""User (identity) model."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, String, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from linkbio.core.database import Base
from linkbio.utils.datetime_utils import utc_now_lambda


class User(Base):
    """Canonical account record.

    ``provider_id`` holds the external identity provider's stable subject
    (Google ``sub``). Accounts created through OAuth never carry a password.
    """

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    username = Column(String(20), nullable=False)
    email = Column(String(255), nullable=True)
    name = Column(String(255), nullable=False, default="")
    avatar = Column(String(1024), nullable=True)
    provider_id = Column(String(255), nullable=True)
    password_hash = Column(String(255), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    last_login_at = Column(DateTime)
    created_at = Column(DateTime, default=utc_now_lambda, nullable=False)
    updated_at = Column(DateTime, default=utc_now_lambda, onupdate=utc_now_lambda, nullable=False)

    # Relationships
    sessions = relationship("UserSession", back_populates="identity", cascade="all, delete-orphan",
                            foreign_keys="UserSession.identity_id")

    # Constraint names are matched when classifying IntegrityErrors
    __table_args__ = (
        UniqueConstraint("username", name="uq_users_username"),
        UniqueConstraint("email", name="uq_users_email"),
        UniqueConstraint("provider_id", name="uq_users_provider_id"),
    )

    def __repr__(self) -> str:
        return f"<User {self.username}>"
