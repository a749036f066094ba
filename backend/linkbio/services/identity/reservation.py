"""Pending username reservation for OAuth signups.

A visitor may pick a handle before authenticating. The candidate rides on the
flow's ``oauth_states`` row and is only checked when the callback is about to
create a new account, since availability can change during the round trip.
"""

import logging
import re
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from linkbio.crud.user import user_crud

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[a-z0-9_]{3,20}$")
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 20


def normalize_username(candidate: Optional[str]) -> str:
    return (candidate or "").strip().lower()


def is_valid_username(candidate: Optional[str]) -> bool:
    """Check the username format (``[a-z0-9_]{3,20}`` after normalization)."""
    return bool(USERNAME_PATTERN.match(normalize_username(candidate)))


class PendingUsernameReservation:
    """Flow-scoped username claim, validated lazily."""

    @staticmethod
    def set(candidate: Optional[str]) -> Optional[str]:
        """
        Prepare a claim for storage on the flow row.

        Only trims and lowercases; a malformed or taken value is still stored
        and discarded at consumption time.
        """
        value = normalize_username(candidate)
        if not value:
            return None
        # Column width; anything longer can never be valid anyway
        return value[:64]

    @staticmethod
    async def consume(db: AsyncSession, claim: Optional[str]) -> Optional[str]:
        """
        Return the claimed username if it is well formed and free, else None.

        A None result means the caller falls back to a synthesized username.
        """
        if not claim:
            return None

        candidate = normalize_username(claim)
        if not USERNAME_PATTERN.match(candidate):
            logger.info("Discarding malformed pending username")
            return None

        if await user_crud.get_by_username(db, candidate) is not None:
            logger.info("Pending username %s no longer available", candidate)
            return None

        return candidate

    @staticmethod
    async def is_available(db: AsyncSession, candidate: str) -> bool:
        """Format check plus a point-in-time availability lookup."""
        if not is_valid_username(candidate):
            return False
        return await user_crud.get_by_username(db, normalize_username(candidate)) is None


pending_usernames = PendingUsernameReservation()
