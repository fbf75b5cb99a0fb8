from __future__ import annotations

import logging
import uuid
from collections.abc import Callable

from fastapi import Depends, Header, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_api.auth.schemas import ApplicationUser
from crm_api.core.context import get_request_context
from crm_api.core.database import get_db
from crm_api.errors import (
    InsufficientPermissions,
    InvalidOrExpiredToken,
    MissingCredential,
    UserDeactivated,
    UserNotProvisioned,
)
from crm_api.identity import IdentityClient, IdentityServiceError, get_identity_client
from crm_api.metrics import observe_auth_resolution
from crm_api.otel import tag_current_span
from crm_api.store.errors import store_operation
from crm_api.store.models import AppUser


logger = logging.getLogger("crm_api.auth")


def extract_bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise MissingCredential()
    token = authorization[len("Bearer ") :].strip()
    if not token:
        raise MissingCredential("No token provided")
    return token


class SessionResolver:
    """Turns a bearer token into the caller's ApplicationUser.

    Every call asks the identity service and reads ``users``; nothing is
    cached between requests.
    """

    def __init__(self, db: Session, identity: IdentityClient) -> None:
        self.db = db
        self.identity = identity

    def resolve(self, token: str) -> ApplicationUser:
        try:
            identity = self.identity.get_user(token)
        except IdentityServiceError as exc:
            observe_auth_resolution("invalid_token")
            logger.info("auth.token_rejected", extra={"error": exc.message})
            raise InvalidOrExpiredToken() from exc

        try:
            identity_id = uuid.UUID(identity.id)
        except ValueError as exc:
            observe_auth_resolution("invalid_token")
            raise InvalidOrExpiredToken() from exc

        with store_operation(self.db, "users.resolve"):
            row = self.db.execute(
                select(
                    AppUser.id,
                    AppUser.email,
                    AppUser.first_name,
                    AppUser.last_name,
                    AppUser.role,
                    AppUser.is_active,
                ).where(AppUser.id == identity_id)
            ).one_or_none()

        if row is None:
            observe_auth_resolution("not_provisioned")
            logger.warning("auth.user_not_provisioned", extra={"user_id": str(identity_id)})
            raise UserNotProvisioned()
        if not row.is_active:
            observe_auth_resolution("deactivated")
            raise UserDeactivated()

        observe_auth_resolution("ok")
        return ApplicationUser(
            id=row.id,
            email=row.email,
            first_name=row.first_name,
            last_name=row.last_name,
            role=row.role,
        )


def get_current_user(
    request: Request,
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
    identity: IdentityClient = Depends(get_identity_client),
) -> ApplicationUser:
    token = extract_bearer_token(authorization)
    user = SessionResolver(db, identity).resolve(token)
    context = get_request_context(request)
    if context is not None:
        context.user_id = str(user.id)
    tag_current_span(user_id=str(user.id), user_role=user.role)
    return user


def require_roles(*roles: str) -> Callable[..., ApplicationUser]:
    allowed = set(roles)

    def checker(user: ApplicationUser = Depends(get_current_user)) -> ApplicationUser:
        if user.role not in allowed:
            raise InsufficientPermissions(f"Requires role: {' or '.join(sorted(allowed))}")
        return user

    return checker
