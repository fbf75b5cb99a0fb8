from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from jose import JWTError, jwt
from opentelemetry import trace
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from crm_api.core.config import Settings
from crm_api.identity.client import AuthSession, Identity, IdentityServiceError
from crm_api.identity.models import IdentityAccount, IdentitySession
from crm_api.metrics import observe_identity_call


logger = logging.getLogger("crm_api.identity")
tracer = trace.get_tracer("crm_api.identity.local")

BCRYPT_MAX_PASSWORD_BYTES = 72


def hash_password(password: str, *, rounds: int = 12) -> str:
    encoded = password.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_PASSWORD_BYTES:
        raise IdentityServiceError("Password is too long", status_code=422)
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    encoded = password.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class LocalIdentityClient:
    """Self-contained identity backend for development and tests.

    Accounts and sessions live in the application database. Access tokens are
    short-lived HS256 JWTs bound to a session row, so signing out revokes them
    before they expire. Refresh tokens are opaque and rotate on every refresh.
    """

    def __init__(self, session: Session, settings: Settings) -> None:
        self.session = session
        self.settings = settings

    def sign_up(self, email: str, password: str, metadata: dict[str, Any] | None = None) -> Identity:
        with tracer.start_as_current_span("identity.sign_up"):
            if not password:
                raise IdentityServiceError("Password is required", status_code=422)
            account = IdentityAccount(
                email=email.strip().lower(),
                password_hash=hash_password(password, rounds=self.settings.password_hash_rounds),
                user_metadata=dict(metadata or {}),
                email_confirmed=True,
            )
            try:
                self.session.add(account)
                self.session.commit()
            except IntegrityError as exc:
                self.session.rollback()
                observe_identity_call("sign_up", "error")
                raise IdentityServiceError("User already registered", status_code=422) from exc
            observe_identity_call("sign_up", "ok")
            return self._to_identity(account)

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        with tracer.start_as_current_span("identity.sign_in"):
            account = self.session.scalar(
                select(IdentityAccount).where(IdentityAccount.email == email.strip().lower())
            )
            if account is None or not verify_password(password, account.password_hash):
                observe_identity_call("sign_in", "error")
                raise IdentityServiceError("Invalid login credentials", status_code=400)

            session_row = IdentitySession(
                identity_id=account.id,
                refresh_token=secrets.token_urlsafe(48),
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.settings.refresh_token_ttl_seconds),
            )
            self.session.add(session_row)
            self.session.commit()
            observe_identity_call("sign_in", "ok")
            return self._issue(account, session_row)

    def get_user(self, access_token: str) -> Identity:
        with tracer.start_as_current_span("identity.get_user"):
            claims = self._decode(access_token)
            session_row = self.session.get(IdentitySession, self._claim_uuid(claims, "session_id"))
            if session_row is None or session_row.revoked:
                observe_identity_call("get_user", "error")
                raise IdentityServiceError("Session not found", status_code=403)
            account = self.session.get(IdentityAccount, self._claim_uuid(claims, "sub"))
            if account is None:
                observe_identity_call("get_user", "error")
                raise IdentityServiceError("User not found", status_code=404)
            observe_identity_call("get_user", "ok")
            return self._to_identity(account)

    def refresh_session(self, refresh_token: str) -> AuthSession:
        with tracer.start_as_current_span("identity.refresh_session"):
            session_row = self.session.scalar(
                select(IdentitySession).where(IdentitySession.refresh_token == refresh_token)
            )
            now = datetime.now(timezone.utc)
            if session_row is None or session_row.revoked or _as_aware(session_row.expires_at) <= now:
                observe_identity_call("refresh_session", "error")
                raise IdentityServiceError("Invalid Refresh Token", status_code=400)

            account = self.session.get(IdentityAccount, session_row.identity_id)
            if account is None:
                observe_identity_call("refresh_session", "error")
                raise IdentityServiceError("User not found", status_code=404)

            session_row.refresh_token = secrets.token_urlsafe(48)
            session_row.refreshed_at = now
            self.session.commit()
            observe_identity_call("refresh_session", "ok")
            return self._issue(account, session_row)

    def sign_out(self, access_token: str | None) -> None:
        if not access_token:
            return
        with tracer.start_as_current_span("identity.sign_out"):
            try:
                claims = self._decode(access_token)
            except IdentityServiceError:
                logger.info("identity.sign_out_noop")
                return
            session_row = self.session.get(IdentitySession, self._claim_uuid(claims, "session_id"))
            if session_row is None or session_row.revoked:
                return
            session_row.revoked = True
            self.session.commit()
            observe_identity_call("sign_out", "ok")

    def update_user(self, identity_id: str, *, email: str | None = None, password: str | None = None) -> Identity:
        with tracer.start_as_current_span("identity.update_user"):
            account = self._account(identity_id)
            if email:
                account.email = email.strip().lower()
            if password:
                account.password_hash = hash_password(password, rounds=self.settings.password_hash_rounds)
            try:
                self.session.commit()
            except IntegrityError as exc:
                self.session.rollback()
                observe_identity_call("update_user", "error")
                raise IdentityServiceError("Email address already registered", status_code=422) from exc
            observe_identity_call("update_user", "ok")
            return self._to_identity(account)

    def delete_user(self, identity_id: str) -> None:
        with tracer.start_as_current_span("identity.delete_user"):
            account = self._account(identity_id)
            account_id = account.id
            try:
                sessions = self.session.scalars(
                    select(IdentitySession).where(IdentitySession.identity_id == account_id)
                ).all()
                for session_row in sessions:
                    self.session.delete(session_row)
                self.session.delete(account)
                self.session.commit()
            except SQLAlchemyError as exc:
                self.session.rollback()
                observe_identity_call("delete_user", "error")
                raise IdentityServiceError(f"Failed to delete user: {exc}") from exc
            observe_identity_call("delete_user", "ok")

    def ping(self) -> None:
        try:
            self.session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise IdentityServiceError(f"Identity store unreachable: {exc}") from exc

    def _issue(self, account: IdentityAccount, session_row: IdentitySession) -> AuthSession:
        now = datetime.now(timezone.utc)
        ttl = self.settings.access_token_ttl_seconds
        claims = {
            "sub": str(account.id),
            "email": account.email,
            "role": "authenticated",
            "session_id": str(session_row.id),
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ttl)).timestamp()),
            "jti": secrets.token_hex(8),
        }
        access_token = jwt.encode(claims, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)
        return AuthSession(
            access_token=access_token,
            refresh_token=session_row.refresh_token,
            expires_in=ttl,
            user=self._to_identity(account),
        )

    def _account(self, identity_id: str) -> IdentityAccount:
        try:
            account_id = uuid.UUID(identity_id)
        except ValueError as exc:
            raise IdentityServiceError("Invalid identity id", status_code=400) from exc
        account = self.session.get(IdentityAccount, account_id)
        if account is None:
            raise IdentityServiceError("User not found", status_code=404)
        return account

    def _decode(self, access_token: str) -> dict[str, Any]:
        try:
            return jwt.decode(access_token, self.settings.jwt_secret, algorithms=[self.settings.jwt_algorithm])
        except JWTError as exc:
            observe_identity_call("decode", "error")
            raise IdentityServiceError("Invalid JWT", status_code=401) from exc

    @staticmethod
    def _claim_uuid(claims: dict[str, Any], name: str) -> uuid.UUID:
        try:
            return uuid.UUID(str(claims.get(name)))
        except ValueError as exc:
            raise IdentityServiceError(f"Invalid claim: {name}", status_code=401) from exc

    @staticmethod
    def _to_identity(account: IdentityAccount) -> Identity:
        return Identity(id=str(account.id), email=account.email, metadata=dict(account.user_metadata or {}))
