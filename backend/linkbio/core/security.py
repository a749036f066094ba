"""Password hashing and opaque-secret helpers."""

import hashlib
import secrets

from passlib.context import CryptContext

# Password hashing context using Argon2
pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def hash_password(password: str) -> str:
    """
    Hash a password using Argon2.

    Args:
        password: Plain text password

    Returns:
        Hashed password
    """
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash.

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password

    Returns:
        True if password matches, False otherwise
    """
    return pwd_context.verify(plain_password, hashed_password)


def generate_random_token(length: int = 32) -> str:
    """
    Generate a random URL-safe token.

    Args:
        length: Number of random bytes (default 32)

    Returns:
        URL-safe random token
    """
    return secrets.token_urlsafe(length)


def hash_token(raw: str) -> str:
    """SHA-256 hex digest used to store opaque secrets (session ids, CSRF tokens)."""
    return hashlib.sha256(raw.encode()).hexdigest()
