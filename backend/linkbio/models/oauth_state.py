"""OAuth state model (one-time, expiring)."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, Uuid

from linkbio.core.database import Base
from linkbio.utils.datetime_utils import utc_now_lambda


class OAuthState(Base):
    """Correlates the start and callback legs of one authorization-code flow.

    The raw CSRF token travels inside the signed ``state`` parameter; only its
    hash is stored. A row is consumed by setting ``used_at`` exactly once.
    ``pending_username`` is the handle the visitor asked for before signing in.
    """

    __tablename__ = "oauth_states"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    csrf_hash = Column(String(64), nullable=False, unique=True, index=True)
    session_id = Column(
        String(64),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    pending_username = Column(String(64), nullable=True)
    client_correlation = Column(String(128), nullable=True)

    issued_at = Column(DateTime, default=utc_now_lambda, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<OAuthState {self.id} used={self.used_at is not None}>"
