from __future__ import annotations

import asyncio
import logging

import httpx
from pydantic import BaseModel

from crm_web.errors import ApiRequestError, ClientError
from crm_web.events import AuthEventChannel, AuthEventKind
from crm_web.http import send_json


logger = logging.getLogger("crm_web.session")


class Session(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int | None = None
    token_type: str | None = None


class GatewayIdentity:
    """Client-side view of the identity service, backed by the gateway's auth endpoints.

    The current session lives in memory only. Every state change is published
    on ``channel``.
    """

    def __init__(self, client: httpx.AsyncClient, channel: AuthEventChannel | None = None) -> None:
        self._client = client
        self.channel = channel or AuthEventChannel()
        self._session: Session | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_session(self) -> Session | None:
        return self._session

    async def initialize(self, session: Session | None = None) -> None:
        if session is not None:
            self._session = session
        await self.channel.publish(AuthEventKind.INITIAL_SESSION, self._session)

    async def sign_in(self, email: str, password: str) -> Session:
        payload = await send_json(self._client, "POST", "/api/auth/login", json={"email": email, "password": password})
        session = Session.model_validate(payload["session"])
        self._session = session
        logger.info("session.signed_in")
        await self.channel.publish(AuthEventKind.SIGNED_IN, session)
        return session

    async def refresh_session(self, stale_access_token: str | None = None) -> Session:
        """Exchange the refresh token for a new session, one exchange at a time.

        Refresh tokens rotate, so concurrent 401s must not each spend the same
        one. A caller passing the access token its request was rejected with
        gets the current session back if someone else already replaced it.
        """
        async with self._refresh_lock:
            current = self._session
            if current is None:
                raise ClientError("No session to refresh")
            if stale_access_token is not None and current.access_token != stale_access_token:
                logger.debug("session.refresh_skipped")
                return current
            try:
                payload = await send_json(
                    self._client,
                    "POST",
                    "/api/auth/refresh",
                    json={"refresh_token": current.refresh_token},
                )
            except ApiRequestError:
                if self._session is current:
                    self._session = None
                    await self.channel.publish(AuthEventKind.SIGNED_OUT, None)
                raise
            session = Session.model_validate(payload["session"])
            self._session = session
        logger.info("session.refreshed")
        await self.channel.publish(AuthEventKind.TOKEN_REFRESHED, session)
        return session

    async def sign_out(self) -> None:
        current = self._session
        headers = {"Authorization": f"Bearer {current.access_token}"} if current is not None else None
        try:
            await send_json(self._client, "POST", "/api/auth/logout", headers=headers)
        finally:
            self._session = None
            logger.info("session.signed_out")
            await self.channel.publish(AuthEventKind.SIGNED_OUT, None)
