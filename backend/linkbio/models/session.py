"""Server-side session model."""

from sqlalchemy import Column, DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import relationship

from linkbio.core.database import Base
from linkbio.utils.datetime_utils import utc_now, utc_now_lambda


class UserSession(Base):
    """Cookie-keyed authentication state.

    ``id`` is the SHA-256 of the cookie value; the raw value only ever lives in
    the browser. ``identity_id`` is the one canonical identity reference.
    ``alias_identity_ref`` is the slot third-party OAuth integrations (and rows
    carried over from older deployments) write the user id into; it is read
    through by the session manager and never trusted on its own. Both are NULL
    for an anonymous session that only carries an OAuth flow.
    """

    __tablename__ = "sessions"

    id = Column(String(64), primary_key=True)
    identity_id = Column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    alias_identity_ref = Column(String(64), nullable=True)

    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utc_now_lambda, nullable=False)
    updated_at = Column(DateTime, default=utc_now_lambda, onupdate=utc_now_lambda, nullable=False)

    identity = relationship("User", back_populates="sessions", foreign_keys=[identity_id])

    @property
    def is_expired(self) -> bool:
        """Check if session has expired."""
        return utc_now() >= self.expires_at

    def __repr__(self) -> str:
        return f"<UserSession {self.id[:8]}... identity={self.identity_id}>"
