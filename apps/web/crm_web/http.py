from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from crm_web.config import ClientSettings, get_client_settings
from crm_web.errors import ApiRequestError, ClientError, SessionExpiredError

if TYPE_CHECKING:
    from crm_web.identity import Session


logger = logging.getLogger("crm_web.http")

AuthFailureHandler = Callable[[str], "Awaitable[None] | None"]


class CredentialSource(Protocol):
    async def get_session(self) -> Session | None: ...

    async def refresh_session(self, stale_access_token: str | None = None) -> Session | None: ...


def build_http_client(settings: ClientSettings | None = None, **kwargs: Any) -> httpx.AsyncClient:
    settings = settings or get_client_settings()
    return httpx.AsyncClient(
        base_url=settings.api_base_url,
        timeout=settings.request_timeout_seconds,
        headers={"Content-Type": "application/json"},
        **kwargs,
    )


def decode_response(response: httpx.Response) -> Any:
    if response.is_success:
        if response.status_code == 204 or not response.content:
            return None
        return response.json()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    raise ApiRequestError.from_payload(response.status_code, payload, response.reason_phrase or "Request failed")


async def send_json(client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> Any:
    response = await client.request(method, path, **kwargs)
    return decode_response(response)


class RequestPipeline:
    """Authenticated requests against the gateway.

    The bearer token is read from ``credentials`` for every request. A 401 is
    answered with exactly one refresh and one re-issue; a second 401 is
    surfaced to the caller as is.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: CredentialSource,
        *,
        on_auth_failure: AuthFailureHandler | None = None,
        settings: ClientSettings | None = None,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._on_auth_failure = on_auth_failure
        self._settings = settings or get_client_settings()

    async def _access_token(self) -> str | None:
        try:
            session = await self._credentials.get_session()
        except Exception as exc:
            logger.warning("http.session_fetch_failed", extra={"error": str(exc)})
            return None
        return session.access_token if session is not None else None

    async def _send(
        self,
        method: str,
        path: str,
        token: str | None,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        response = await self._client.request(method, path, json=json, params=params, headers=headers)
        logger.debug(
            "http.response",
            extra={"method": method, "path": path, "status_code": response.status_code},
        )
        return response

    async def _handle_auth_failure(self) -> None:
        if self._on_auth_failure is None:
            return
        result = self._on_auth_failure(self._settings.login_path)
        if inspect.isawaitable(result):
            await result

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        token = await self._access_token()
        response = await self._send(method, path, token, json=json, params=params)
        if response.status_code != 401:
            return decode_response(response)

        try:
            session = await self._credentials.refresh_session(stale_access_token=token)
            if session is None:
                raise ClientError("Failed to refresh session")
        except (ClientError, httpx.HTTPError) as exc:
            logger.warning("http.session_refresh_failed", extra={"path": path, "error": str(exc)})
            await self._handle_auth_failure()
            raise SessionExpiredError() from exc

        logger.info("http.request_retried", extra={"method": method, "path": path})
        retried = await self._send(method, path, session.access_token, json=json, params=params)
        return decode_response(retried)

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PUT", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", path, **kwargs)
