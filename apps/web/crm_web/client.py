from __future__ import annotations

from types import TracebackType

import httpx

from crm_web.config import ClientSettings, get_client_settings
from crm_web.errors import ErrorReporter
from crm_web.http import AuthFailureHandler, RequestPipeline, build_http_client
from crm_web.identity import GatewayIdentity
from crm_web.pages import CrmClient
from crm_web.session import ClientSessionStore


class CrmWebClient:
    """Wires the identity view, request pipeline, session store and resource clients together."""

    def __init__(
        self,
        settings: ClientSettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        on_auth_failure: AuthFailureHandler | None = None,
    ) -> None:
        self.settings = settings or get_client_settings()
        self.http = build_http_client(self.settings, transport=transport)
        self.identity = GatewayIdentity(self.http)
        self.pipeline = RequestPipeline(
            self.http,
            self.identity,
            on_auth_failure=on_auth_failure,
            settings=self.settings,
        )
        self.session = ClientSessionStore(self.identity, self.http)
        self.crm = CrmClient(self.pipeline)
        self.errors = ErrorReporter()

    async def __aenter__(self) -> CrmWebClient:
        await self.session.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.session.stop()
        await self.http.aclose()
