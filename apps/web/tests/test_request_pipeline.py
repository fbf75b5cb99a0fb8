from __future__ import annotations

import asyncio
import logging

import httpx
import pytest

from crm_web.config import ClientSettings
from crm_web.errors import ApiRequestError, ClientError, SessionExpiredError
from crm_web.http import RequestPipeline
from crm_web.identity import Session


class FakeCredentials:
    def __init__(self, token: str | None = "stale", *, refreshed: str | None = "fresh", fail_get: bool = False) -> None:
        self.session = Session(access_token=token, refresh_token="r-1") if token else None
        self.refreshed = refreshed
        self.fail_get = fail_get
        self.refresh_calls = 0

    async def get_session(self) -> Session | None:
        if self.fail_get:
            raise RuntimeError("storage unavailable")
        return self.session

    async def refresh_session(self, stale_access_token: str | None = None) -> Session | None:
        self.refresh_calls += 1
        if self.refreshed is None:
            raise ClientError("Invalid or expired token")
        self.session = Session(access_token=self.refreshed, refresh_token="r-2")
        return self.session


def _pipeline(handler, credentials: FakeCredentials, **kwargs) -> tuple[RequestPipeline, httpx.AsyncClient]:
    client = httpx.AsyncClient(base_url="http://gateway.test", transport=httpx.MockTransport(handler))
    pipeline = RequestPipeline(client, credentials, settings=ClientSettings(login_path="/login"), **kwargs)
    return pipeline, client


def _unauthorized() -> httpx.Response:
    return httpx.Response(401, json={"code": "InvalidOrExpiredToken", "message": "Invalid or expired token"})


def test_401_triggers_exactly_one_refresh_and_reissue() -> None:
    seen: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("Authorization"))
        if request.headers.get("Authorization") == "Bearer fresh":
            return httpx.Response(200, json=[{"id": "c-1"}])
        return _unauthorized()

    credentials = FakeCredentials()
    pipeline, client = _pipeline(handler, credentials)

    async def run():
        async with client:
            return await pipeline.get("/api/customers")

    assert asyncio.run(run()) == [{"id": "c-1"}]
    assert seen == ["Bearer stale", "Bearer fresh"]
    assert credentials.refresh_calls == 1


def test_second_401_is_surfaced_without_another_refresh() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return _unauthorized()

    credentials = FakeCredentials()
    pipeline, client = _pipeline(handler, credentials)

    async def run():
        async with client:
            await pipeline.get("/api/deals")

    with pytest.raises(ApiRequestError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.status_code == 401
    assert exc_info.value.code == "InvalidOrExpiredToken"
    assert calls == 2
    assert credentials.refresh_calls == 1


def test_refresh_failure_invokes_auth_failure_callback() -> None:
    redirects: list[str] = []
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return _unauthorized()

    credentials = FakeCredentials(refreshed=None)
    pipeline, client = _pipeline(handler, credentials, on_auth_failure=redirects.append)

    async def run():
        async with client:
            await pipeline.get("/api/contacts")

    with pytest.raises(SessionExpiredError):
        asyncio.run(run())
    assert redirects == ["/login"]
    assert calls == 1


def test_async_auth_failure_callback_is_awaited() -> None:
    redirects: list[str] = []

    async def navigate(path: str) -> None:
        redirects.append(path)

    credentials = FakeCredentials(refreshed=None)
    pipeline, client = _pipeline(lambda request: _unauthorized(), credentials, on_auth_failure=navigate)

    async def run():
        async with client:
            await pipeline.get("/api/users")

    with pytest.raises(SessionExpiredError):
        asyncio.run(run())
    assert redirects == ["/login"]


def test_session_fetch_failure_sends_request_without_token(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)
    seen: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("Authorization"))
        return httpx.Response(200, json={"status": "healthy"})

    pipeline, client = _pipeline(handler, FakeCredentials(fail_get=True))

    async def run():
        async with client:
            return await pipeline.get("/health")

    assert asyncio.run(run()) == {"status": "healthy"}
    assert seen == [None]
    records = [record for record in caplog.records if record.getMessage() == "http.session_fetch_failed"]
    assert records
    assert records[0].name == "crm_web.http"


def test_error_envelope_is_raised_as_api_request_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={"code": "InvalidReference", "message": "Invalid customer selected", "details": None},
        )

    pipeline, client = _pipeline(handler, FakeCredentials())

    async def run():
        async with client:
            await pipeline.post("/api/deals", json={"title": "D", "customer_id": "missing"})

    with pytest.raises(ApiRequestError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.status_code == 400
    assert exc_info.value.code == "InvalidReference"
    assert exc_info.value.message == "Invalid customer selected"


def test_credentials_are_per_request_not_client_defaults() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(204)

    credentials = FakeCredentials()
    pipeline, client = _pipeline(handler, credentials)

    async def run():
        async with client:
            result = await pipeline.delete("/api/customers/c-1")
            return result, client.headers.get("Authorization")

    result, default_header = asyncio.run(run())
    assert result is None
    assert default_header is None
