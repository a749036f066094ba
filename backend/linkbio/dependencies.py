"""FastAPI dependencies for authentication."""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from linkbio.core.database import get_db
from linkbio.models.user import User
from linkbio.services.identity.resolver import identity_resolver


async def get_current_identity(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the caller to a live identity.

    Session cookie first, then ``Authorization: Bearer``. The identity is
    always re-read from the database by id.

    Args:
        request: Incoming request
        db: Database session

    Returns:
        Current identity

    Raises:
        AuthError: Translated to a generic 401 by the app's exception handlers
    """
    return await identity_resolver.resolve(request, db)
