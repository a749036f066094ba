"""DateTime utilities for timezone-aware timestamp handling."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """
    Get current UTC datetime without timezone info (offset-naive).

    Returns offset-naive datetime compatible with TIMESTAMP WITHOUT TIME ZONE
    columns.

    Example:
        >>> now = utc_now()
        >>> print(now.tzinfo)
        None
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Lambda version for SQLAlchemy default/onupdate parameters
utc_now_lambda = lambda: datetime.now(timezone.utc).replace(tzinfo=None)
