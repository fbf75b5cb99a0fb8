from __future__ import annotations

import logging
from dataclasses import dataclass
from types import TracebackType

import httpx
from pydantic import BaseModel

from crm_web.errors import ClientError, describe_error
from crm_web.events import AuthEvent, Subscription
from crm_web.http import send_json
from crm_web.identity import GatewayIdentity, Session


logger = logging.getLogger("crm_web.session")


class CurrentUser(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: str


@dataclass(frozen=True)
class NavItem:
    text: str
    path: str


BASE_NAVIGATION = (
    NavItem("Dashboard", "/"),
    NavItem("Customers", "/customers"),
    NavItem("Contacts", "/contacts"),
    NavItem("Deals", "/deals"),
)
ROLE_NAVIGATION = {
    "admin": (NavItem("Users", "/users"), NavItem("Task Assignment", "/task-assignment")),
    "manager": (NavItem("Task Assignment", "/task-assignment"),),
}


class ClientSessionStore:
    """Current user of the client, kept in step with the auth event channel."""

    def __init__(self, identity: GatewayIdentity, client: httpx.AsyncClient) -> None:
        self._identity = identity
        self._client = client
        self._subscription: Subscription | None = None
        self.user: CurrentUser | None = None
        self.last_error: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def started(self) -> bool:
        return self._subscription is not None

    async def start(self) -> None:
        if self._subscription is None:
            self._subscription = self._identity.channel.subscribe(self._on_auth_event)
        session = await self._identity.get_session()
        await self._load_user(session)

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def __aenter__(self) -> ClientSessionStore:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    async def _on_auth_event(self, event: AuthEvent) -> None:
        logger.info("session.auth_event", extra={"outcome": event.kind.value})
        await self._load_user(event.session)

    async def _load_user(self, session: Session | None) -> None:
        if session is None or not session.access_token:
            self.user = None
            return
        try:
            payload = await send_json(
                self._client,
                "GET",
                "/api/auth/me",
                headers={"Authorization": f"Bearer {session.access_token}"},
            )
        except (ClientError, httpx.HTTPError) as exc:
            logger.warning("session.user_fetch_failed", extra={"error": describe_error(exc)})
            self.user = None
            self.last_error = describe_error(exc)
            return
        self.user = CurrentUser.model_validate(payload)
        self.last_error = None
        logger.info("session.user_loaded", extra={"user_id": self.user.id})

    async def login(self, email: str, password: str) -> CurrentUser:
        session = await self._identity.sign_in(email, password)
        if not self.started:
            await self._load_user(session)
        if self.user is None:
            raise ClientError(self.last_error or "Login failed")
        return self.user

    async def logout(self) -> None:
        await self._identity.sign_out()
        self.user = None

    def navigation(self) -> list[NavItem]:
        items = list(BASE_NAVIGATION)
        if self.user is not None:
            items.extend(ROLE_NAVIGATION.get(self.user.role, ()))
        return items
