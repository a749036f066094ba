"""Authentication Pydantic schemas."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

USERNAME_REGEX = r"^[a-z0-9_]{3,20}$"


def _normalize_username(value: str) -> str:
    return value.strip().lower() if isinstance(value, str) else value


class Identity(BaseModel):
    """Public view of an identity."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str
    email: Optional[str] = None
    name: str = ""
    avatar: Optional[str] = None
    created_at: Optional[datetime] = None


class LoginRequest(BaseModel):
    """Schema for password login."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=256)


class RegisterRequest(BaseModel):
    """Schema for password signup."""

    username: str = Field(..., pattern=USERNAME_REGEX)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=256)
    name: str = Field("", max_length=255)

    @field_validator("username", mode="before")
    @classmethod
    def normalize_username(cls, v):
        return _normalize_username(v)


class UsernameRequest(BaseModel):
    """Schema for renaming the current identity."""

    candidate: str = Field(..., pattern=USERNAME_REGEX)

    @field_validator("candidate", mode="before")
    @classmethod
    def normalize_candidate(cls, v):
        return _normalize_username(v)


class TokenResponse(BaseModel):
    """Schema for token response."""

    access_token: str
    token_type: str = "bearer"
    identity: Identity


class UsernameAvailability(BaseModel):
    username: str
    available: bool
