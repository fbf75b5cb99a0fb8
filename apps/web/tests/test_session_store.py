from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from crm_web.client import CrmWebClient
from crm_web.config import ClientSettings
from crm_web.errors import ApiRequestError, ClientError
from crm_web.events import AuthEvent, AuthEventChannel, AuthEventKind
from crm_web.identity import GatewayIdentity, Session
from crm_web.pages import load_dashboard
from crm_web.session import ClientSessionStore


class FakeGateway:
    """Minimal stand-in for the auth endpoints of the gateway."""

    def __init__(self, role: str = "agent") -> None:
        self.role = role
        self.tokens: dict[str, str] = {}
        self.issued = 0
        self.me_calls: list[str | None] = []
        self.fail_me = False
        self.logouts = 0

    def _issue(self) -> dict[str, str]:
        self.issued += 1
        access, refresh = f"access-{self.issued}", f"refresh-{self.issued}"
        self.tokens[refresh] = access
        return {"access_token": access, "refresh_token": refresh}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/auth/login":
            body = json.loads(request.content)
            if body["password"] != "Str0ng!Passw0rd":
                return httpx.Response(401, json={"code": "InvalidCredentials", "message": "Invalid login credentials"})
            return httpx.Response(200, json={"user": self._user(), "session": self._issue()})
        if path == "/api/auth/refresh":
            body = json.loads(request.content)
            if body["refresh_token"] not in self.tokens:
                return httpx.Response(401, json={"code": "InvalidOrExpiredToken", "message": "Invalid or expired token"})
            del self.tokens[body["refresh_token"]]
            return httpx.Response(200, json={"session": self._issue()})
        if path == "/api/auth/logout":
            self.logouts += 1
            return httpx.Response(200, json={"message": "Logged out successfully"})
        if path == "/api/auth/me":
            self.me_calls.append(request.headers.get("Authorization"))
            if self.fail_me:
                return httpx.Response(401, json={"code": "UserNotProvisioned", "message": "User not found in database"})
            return httpx.Response(200, json=self._user())
        return httpx.Response(404, json={"code": "NotFound", "message": "not found"})

    def _user(self) -> dict[str, str]:
        return {
            "id": "0b8f3a8e-7d43-4a4e-9a55-5d2f0f0a1c11",
            "email": "pat@example.com",
            "first_name": "Pat",
            "last_name": "Lee",
            "role": self.role,
        }


def _client(gateway: FakeGateway) -> CrmWebClient:
    return CrmWebClient(ClientSettings(api_base_url="http://gateway.test"), transport=httpx.MockTransport(gateway))


def test_start_without_session_leaves_user_signed_out() -> None:
    gateway = FakeGateway()

    async def run():
        async with _client(gateway) as web:
            return web.session.user, web.session.is_authenticated

    user, authenticated = asyncio.run(run())
    assert user is None
    assert authenticated is False
    assert gateway.me_calls == []


def test_login_loads_user_and_role_navigation() -> None:
    gateway = FakeGateway(role="admin")

    async def run():
        async with _client(gateway) as web:
            user = await web.session.login("pat@example.com", "Str0ng!Passw0rd")
            return user, web.session.is_authenticated, [item.text for item in web.session.navigation()]

    user, authenticated, navigation = asyncio.run(run())
    assert user.role == "admin"
    assert authenticated is True
    assert navigation == ["Dashboard", "Customers", "Contacts", "Deals", "Users", "Task Assignment"]
    assert gateway.me_calls == ["Bearer access-1"]


def test_manager_and_agent_navigation() -> None:
    async def navigation_for(role: str) -> list[str]:
        async with _client(FakeGateway(role=role)) as web:
            await web.session.login("pat@example.com", "Str0ng!Passw0rd")
            return [item.text for item in web.session.navigation()]

    assert asyncio.run(navigation_for("manager"))[-1] == "Task Assignment"
    assert "Task Assignment" not in asyncio.run(navigation_for("agent"))


def test_wrong_password_raises_and_keeps_user_signed_out() -> None:
    gateway = FakeGateway()

    async def run():
        async with _client(gateway) as web:
            with pytest.raises(ApiRequestError) as exc_info:
                await web.session.login("pat@example.com", "nope")
            return exc_info.value, web.session.user

    error, user = asyncio.run(run())
    assert error.status_code == 401
    assert error.message == "Invalid login credentials"
    assert user is None


def test_failed_profile_fetch_clears_user() -> None:
    gateway = FakeGateway()

    async def run():
        async with _client(gateway) as web:
            await web.session.login("pat@example.com", "Str0ng!Passw0rd")
            gateway.fail_me = True
            await web.identity.refresh_session()
            return web.session.user, web.session.last_error

    user, last_error = asyncio.run(run())
    assert user is None
    assert last_error == "User not found in database"
    assert gateway.me_calls == ["Bearer access-1", "Bearer access-2"]


def test_refresh_refetches_user_with_new_token() -> None:
    gateway = FakeGateway()
    kinds: list[AuthEventKind] = []

    async def run():
        async with _client(gateway) as web:
            web.identity.channel.subscribe(lambda event: kinds.append(event.kind))
            await web.session.login("pat@example.com", "Str0ng!Passw0rd")
            session = await web.identity.refresh_session()
            return session, web.session.user

    session, user = asyncio.run(run())
    assert session.access_token == "access-2"
    assert user is not None
    assert kinds == [AuthEventKind.SIGNED_IN, AuthEventKind.TOKEN_REFRESHED]
    assert gateway.me_calls[-1] == "Bearer access-2"


def test_logout_clears_user_and_publishes_signed_out() -> None:
    gateway = FakeGateway()
    kinds: list[AuthEventKind] = []

    async def run():
        async with _client(gateway) as web:
            await web.session.login("pat@example.com", "Str0ng!Passw0rd")
            web.identity.channel.subscribe(lambda event: kinds.append(event.kind))
            await web.session.logout()
            return web.session.user, await web.identity.get_session()

    user, session = asyncio.run(run())
    assert user is None
    assert session is None
    assert kinds == [AuthEventKind.SIGNED_OUT]
    assert gateway.logouts == 1


def test_stop_unsubscribes_from_channel() -> None:
    gateway = FakeGateway()

    async def run():
        async with httpx.AsyncClient(base_url="http://gateway.test", transport=httpx.MockTransport(gateway)) as http:
            identity = GatewayIdentity(http)
            async with ClientSessionStore(identity, http) as store:
                inside = identity.channel.subscriber_count
            after = identity.channel.subscriber_count
            await identity.sign_in("pat@example.com", "Str0ng!Passw0rd")
            return inside, after, store.user

    inside, after, user = asyncio.run(run())
    assert inside == 1
    assert after == 0
    assert user is None


def test_start_checks_existing_session_once() -> None:
    gateway = FakeGateway()

    async def run():
        async with httpx.AsyncClient(base_url="http://gateway.test", transport=httpx.MockTransport(gateway)) as http:
            identity = GatewayIdentity(http)
            await identity.initialize(Session(access_token="access-0", refresh_token="refresh-0"))
            store = ClientSessionStore(identity, http)
            await store.start()
            await store.stop()
            return store.user

    user = asyncio.run(run())
    assert user is not None
    assert gateway.me_calls == ["Bearer access-0"]


def test_channel_runs_sync_and_async_handlers() -> None:
    channel = AuthEventChannel()
    received: list[str] = []

    async def async_handler(event: AuthEvent) -> None:
        received.append(f"async:{event.kind.value}")

    subscription = channel.subscribe(lambda event: received.append(f"sync:{event.kind.value}"))
    channel.subscribe(async_handler)

    async def run() -> None:
        await channel.publish(AuthEventKind.SIGNED_OUT, None)
        subscription.unsubscribe()
        subscription.unsubscribe()
        await channel.publish(AuthEventKind.INITIAL_SESSION, None)

    asyncio.run(run())
    assert received == ["sync:SIGNED_OUT", "async:SIGNED_OUT", "async:INITIAL_SESSION"]


class RotatingGateway(FakeGateway):
    """Serves lists only to a live access token, with some latency so requests overlap."""

    def __init__(self) -> None:
        super().__init__(role="admin")
        self.refreshes = 0

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/auth/refresh":
            self.refreshes += 1
            await asyncio.sleep(0.01)
        elif path in ("/api/customers", "/api/contacts", "/api/deals"):
            await asyncio.sleep(0.01)
            live = {f"Bearer {access}" for access in self.tokens.values()}
            if request.headers.get("Authorization") not in live:
                return httpx.Response(401, json={"code": "InvalidOrExpiredToken", "message": "Invalid or expired token"})
            return httpx.Response(200, json=[{"id": "x-1"}])
        return self(request)


def test_concurrent_401s_share_a_single_refresh() -> None:
    gateway = RotatingGateway()
    redirects: list[str] = []

    async def run():
        web = CrmWebClient(
            ClientSettings(api_base_url="http://gateway.test", login_path="/login"),
            transport=httpx.MockTransport(gateway.handle),
            on_auth_failure=redirects.append,
        )
        async with web:
            await web.session.login("pat@example.com", "Str0ng!Passw0rd")
            # access-1 expires while refresh-1 is still good
            gateway.tokens["refresh-1"] = "expired"
            summary = await load_dashboard(web.crm)
            return summary, await web.identity.get_session(), web.session.is_authenticated

    summary, session, authenticated = asyncio.run(run())
    assert gateway.refreshes == 1
    assert redirects == []
    assert session is not None
    assert session.access_token == "access-2"
    assert authenticated is True
    assert (summary.total_customers, summary.total_contacts, summary.total_deals) == (1, 1, 1)


def test_concurrent_refresh_failure_signs_out_once() -> None:
    gateway = RotatingGateway()
    kinds: list[AuthEventKind] = []

    async def run():
        async with CrmWebClient(
            ClientSettings(api_base_url="http://gateway.test"), transport=httpx.MockTransport(gateway.handle)
        ) as web:
            await web.session.login("pat@example.com", "Str0ng!Passw0rd")
            gateway.tokens.clear()
            web.identity.channel.subscribe(lambda event: kinds.append(event.kind))
            results = await asyncio.gather(
                web.identity.refresh_session(stale_access_token="access-1"),
                web.identity.refresh_session(stale_access_token="access-1"),
                return_exceptions=True,
            )
            return results, await web.identity.get_session()

    results, session = asyncio.run(run())
    assert all(isinstance(result, ClientError) for result in results)
    assert session is None
    assert gateway.refreshes == 1
    assert kinds == [AuthEventKind.SIGNED_OUT]
