from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class Identity:
    id: str
    email: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthSession:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"
    user: Identity | None = None


class IdentityServiceError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class IdentityClient(Protocol):
    def sign_up(self, email: str, password: str, metadata: dict[str, Any] | None = None) -> Identity: ...

    def sign_in_with_password(self, email: str, password: str) -> AuthSession: ...

    def get_user(self, access_token: str) -> Identity: ...

    def refresh_session(self, refresh_token: str) -> AuthSession: ...

    def sign_out(self, access_token: str | None) -> None: ...

    def update_user(self, identity_id: str, *, email: str | None = None, password: str | None = None) -> Identity: ...

    def delete_user(self, identity_id: str) -> None: ...

    def ping(self) -> None: ...
