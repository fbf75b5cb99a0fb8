from __future__ import annotations

import logging
from typing import Any

import httpx
from opentelemetry import trace

from crm_api.context import get_correlation_id
from crm_api.core.config import Settings
from crm_api.identity.client import AuthSession, Identity, IdentityServiceError
from crm_api.metrics import observe_identity_call


logger = logging.getLogger("crm_api.identity")
tracer = trace.get_tracer("crm_api.identity.platform")

# Statuses the auth API answers with when a session is already gone.
_ALREADY_SIGNED_OUT = {401, 403, 404}


class PlatformIdentityClient:
    """Identity client for a GoTrue-compatible hosted auth API."""

    def __init__(self, settings: Settings, http_client: httpx.Client | None = None) -> None:
        if not settings.platform_url or not settings.platform_public_key:
            raise IdentityServiceError("Identity platform is not configured")
        self._public_key = settings.platform_public_key
        self._service_key = settings.platform_service_key
        self._http = http_client or httpx.Client(
            base_url=settings.platform_url.rstrip("/") + "/auth/v1",
            timeout=settings.platform_timeout_seconds,
        )

    def sign_up(self, email: str, password: str, metadata: dict[str, Any] | None = None) -> Identity:
        with tracer.start_as_current_span("identity.sign_up") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            if self._service_key:
                # The admin endpoint confirms the address up front.
                payload = self._call(
                    "sign_up",
                    "POST",
                    "/admin/users",
                    json={"email": email, "password": password, "user_metadata": metadata or {}, "email_confirm": True},
                    token=self._service_key,
                )
            else:
                payload = self._call(
                    "sign_up",
                    "POST",
                    "/signup",
                    json={"email": email, "password": password, "data": metadata or {}},
                )
            user_payload = payload.get("user") if isinstance(payload.get("user"), dict) else payload
            identity = self._to_identity(user_payload)
            span.set_attribute("identity_id", identity.id)
            return identity

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        with tracer.start_as_current_span("identity.sign_in"):
            payload = self._call(
                "sign_in",
                "POST",
                "/token",
                params={"grant_type": "password"},
                json={"email": email, "password": password},
            )
            return self._to_session(payload)

    def get_user(self, access_token: str) -> Identity:
        with tracer.start_as_current_span("identity.get_user"):
            payload = self._call("get_user", "GET", "/user", token=access_token)
            return self._to_identity(payload)

    def refresh_session(self, refresh_token: str) -> AuthSession:
        with tracer.start_as_current_span("identity.refresh_session"):
            payload = self._call(
                "refresh_session",
                "POST",
                "/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": refresh_token},
            )
            return self._to_session(payload)

    def sign_out(self, access_token: str | None) -> None:
        if not access_token:
            return
        with tracer.start_as_current_span("identity.sign_out"):
            try:
                self._call("sign_out", "POST", "/logout", token=access_token)
            except IdentityServiceError as exc:
                if exc.status_code in _ALREADY_SIGNED_OUT:
                    logger.info("identity.sign_out_noop", extra={"status_code": exc.status_code})
                    return
                raise

    def update_user(self, identity_id: str, *, email: str | None = None, password: str | None = None) -> Identity:
        if not self._service_key:
            raise IdentityServiceError("Service key required to update users")
        changes: dict[str, Any] = {}
        if email:
            changes["email"] = email
            changes["email_confirm"] = True
        if password:
            changes["password"] = password
        with tracer.start_as_current_span("identity.update_user") as span:
            span.set_attribute("identity_id", identity_id)
            payload = self._call(
                "update_user",
                "PUT",
                f"/admin/users/{identity_id}",
                json=changes,
                token=self._service_key,
            )
            user_payload = payload.get("user") if isinstance(payload.get("user"), dict) else payload
            return self._to_identity(user_payload)

    def delete_user(self, identity_id: str) -> None:
        if not self._service_key:
            raise IdentityServiceError("Service key required to delete users")
        with tracer.start_as_current_span("identity.delete_user") as span:
            span.set_attribute("identity_id", identity_id)
            self._call("delete_user", "DELETE", f"/admin/users/{identity_id}", token=self._service_key)

    def ping(self) -> None:
        self._call("ping", "GET", "/health")

    def _call(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        token: str | None = None,
    ) -> dict[str, Any]:
        headers = {"apikey": self._public_key, "Authorization": f"Bearer {token or self._public_key}"}
        try:
            response = self._http.request(method, path, json=json, params=params, headers=headers)
        except httpx.HTTPError as exc:
            observe_identity_call(operation, "unreachable")
            raise IdentityServiceError(f"Identity service unreachable: {exc}") from exc

        if response.status_code >= 400:
            observe_identity_call(operation, "error")
            raise IdentityServiceError(self._error_message(response), status_code=response.status_code)

        observe_identity_call(operation, "ok")
        if not response.content:
            return {}
        body = response.json()
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"Identity service returned {response.status_code}"
        if isinstance(body, dict):
            for key in ("msg", "error_description", "message", "error"):
                value = body.get(key)
                if isinstance(value, str) and value:
                    return value
        return f"Identity service returned {response.status_code}"

    @staticmethod
    def _to_identity(payload: Any) -> Identity:
        if not isinstance(payload, dict) or not payload.get("id"):
            raise IdentityServiceError("Identity service returned no user")
        metadata = payload.get("user_metadata")
        return Identity(
            id=str(payload["id"]),
            email=str(payload.get("email") or ""),
            metadata=metadata if isinstance(metadata, dict) else {},
        )

    def _to_session(self, payload: dict[str, Any]) -> AuthSession:
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        if not access_token or not refresh_token:
            raise IdentityServiceError("Identity service returned no session")
        user_payload = payload.get("user")
        return AuthSession(
            access_token=str(access_token),
            refresh_token=str(refresh_token),
            expires_in=int(payload.get("expires_in") or 0),
            token_type=str(payload.get("token_type") or "bearer"),
            user=self._to_identity(user_payload) if isinstance(user_payload, dict) else None,
        )
