from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from crm_web.identity import Session


logger = logging.getLogger("crm_web.session")


class AuthEventKind(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


@dataclass(frozen=True)
class AuthEvent:
    kind: AuthEventKind
    session: Session | None


AuthEventHandler = Callable[[AuthEvent], "Awaitable[None] | None"]


class Subscription:
    def __init__(self, channel: AuthEventChannel, handler: AuthEventHandler) -> None:
        self._channel = channel
        self._handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._channel._remove(self._handler)
            self.active = False


class AuthEventChannel:
    """In-process observable of session state changes.

    Handlers run in subscription order. Coroutine handlers are awaited before
    ``publish`` returns, so a caller that publishes ``SIGNED_IN`` sees every
    subscriber's reaction completed.
    """

    def __init__(self) -> None:
        self._handlers: list[AuthEventHandler] = []

    def subscribe(self, handler: AuthEventHandler) -> Subscription:
        self._handlers.append(handler)
        return Subscription(self, handler)

    def _remove(self, handler: AuthEventHandler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    async def publish(self, kind: AuthEventKind, session: Session | None) -> None:
        event = AuthEvent(kind=kind, session=session)
        for handler in list(self._handlers):
            result = handler(event)
            if inspect.isawaitable(result):
                await result
