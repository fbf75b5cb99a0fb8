from __future__ import annotations

from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

UserRole = Literal["admin", "manager", "agent"]


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    email: EmailStr
    password: str = Field(min_length=1)
    first_name: str = Field(min_length=1, alias="firstName")
    last_name: str = Field(min_length=1, alias="lastName")
    role: UserRole = "agent"


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    password: str = Field(min_length=1)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    refresh_token: str = Field(min_length=1)


class ApplicationUser(BaseModel):
    """Role and profile projection of an identity, as read from ``users``."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    first_name: str
    last_name: str
    role: UserRole


class SessionRead(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int | None = None
    token_type: str | None = None


class LoginResponse(BaseModel):
    user: ApplicationUser
    session: SessionRead


class RegisterResponse(BaseModel):
    user: ApplicationUser
    session: SessionRead | None = None
    message: str | None = None


class RefreshResponse(BaseModel):
    session: SessionRead


class MessageResponse(BaseModel):
    message: str
