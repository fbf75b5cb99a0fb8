from __future__ import annotations

import logging
import uuid

from sqlalchemy.orm import Session

from crm_api.activity import log_activity
from crm_api.auth.saga import RegistrationSaga
from crm_api.auth.schemas import (
    ApplicationUser,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    SessionRead,
)
from crm_api.errors import (
    IdentityUnavailable,
    InvalidCredentials,
    InvalidOrExpiredToken,
    UserCreationFailed,
    UserDeactivated,
    UserNotFound,
)
from crm_api.identity import AuthSession, IdentityClient, IdentityServiceError
from crm_api.store.errors import store_operation
from crm_api.store.models import AppUser


logger = logging.getLogger("crm_api.auth")

SIGN_IN_LATER_MESSAGE = "User created successfully. Please sign in."


def _session_read(session: AuthSession) -> SessionRead:
    return SessionRead(
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        expires_in=session.expires_in,
        token_type=session.token_type,
    )


class AuthService:
    def register(self, db: Session, identity: IdentityClient, dto: RegisterRequest) -> RegisterResponse:
        result = RegistrationSaga(db, identity).run(
            email=str(dto.email),
            password=dto.password,
            first_name=dto.first_name,
            last_name=dto.last_name,
            role=dto.role,
        )
        if not result.committed or result.user is None:
            raise UserCreationFailed() from result.error

        user = ApplicationUser.model_validate(result.user)
        try:
            session = identity.sign_in_with_password(str(dto.email), dto.password)
        except IdentityServiceError as exc:
            logger.warning("auth.auto_sign_in_failed", extra={"user_id": str(user.id), "error": exc.message})
            return RegisterResponse(user=user, message=SIGN_IN_LATER_MESSAGE)
        return RegisterResponse(user=user, session=_session_read(session))

    def login(self, db: Session, identity: IdentityClient, dto: LoginRequest) -> LoginResponse:
        try:
            session = identity.sign_in_with_password(str(dto.email), dto.password)
            identity_user = session.user or identity.get_user(session.access_token)
        except IdentityServiceError as exc:
            logger.info("auth.login_rejected", extra={"error": exc.message})
            raise InvalidCredentials() from exc

        with store_operation(db, "users.get"):
            row = db.get(AppUser, uuid.UUID(identity_user.id))
        if row is None:
            # Valid credentials are not enough; the account must be provisioned.
            logger.warning("auth.login_unprovisioned", extra={"user_id": identity_user.id})
            raise UserNotFound()
        if not row.is_active:
            logger.warning("auth.login_deactivated", extra={"user_id": identity_user.id})
            try:
                identity.sign_out(session.access_token)
            except IdentityServiceError as exc:
                logger.warning("auth.sign_out_failed", extra={"user_id": identity_user.id, "error": exc.message})
            raise UserDeactivated()

        user = ApplicationUser.model_validate(row)
        log_activity(db, user.id, "login")
        return LoginResponse(
            user=user,
            session=SessionRead(access_token=session.access_token, refresh_token=session.refresh_token),
        )

    def logout(self, identity: IdentityClient, access_token: str | None) -> MessageResponse:
        try:
            identity.sign_out(access_token)
        except IdentityServiceError as exc:
            if exc.status_code is None or exc.status_code >= 500:
                logger.error("auth.logout_failed", extra={"error": exc.message})
                raise IdentityUnavailable("Logout failed") from exc
            logger.info("auth.logout_noop", extra={"error": exc.message})
        return MessageResponse(message="Logged out successfully")

    def refresh(self, identity: IdentityClient, refresh_token: str) -> RefreshResponse:
        try:
            session = identity.refresh_session(refresh_token)
        except IdentityServiceError as exc:
            logger.info("auth.refresh_rejected", extra={"error": exc.message})
            raise InvalidOrExpiredToken() from exc
        return RefreshResponse(session=_session_read(session))
