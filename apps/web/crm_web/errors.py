from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


logger = logging.getLogger("crm_web.pages")


class ClientError(Exception):
    pass


class ApiRequestError(ClientError):
    """Non-2xx response from the gateway, carrying its error envelope."""

    def __init__(self, status_code: int, message: str, code: str | None = None, *, details: Any = None) -> None:
        self.status_code = status_code
        self.message = message
        self.code = code
        self.details = details
        super().__init__(f"{status_code}: {message}")

    @classmethod
    def from_payload(cls, status_code: int, payload: Any, fallback: str) -> ApiRequestError:
        if isinstance(payload, dict):
            message = payload.get("message") or payload.get("error") or fallback
            return cls(status_code, str(message), payload.get("code"), details=payload.get("details"))
        return cls(status_code, fallback)


class SessionExpiredError(ClientError):
    def __init__(self, message: str = "Session expired") -> None:
        self.message = message
        super().__init__(message)


class FormError(ClientError):
    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


def describe_error(exc: BaseException) -> str:
    message = getattr(exc, "message", None)
    return str(message or exc or exc.__class__.__name__)


@dataclass(frozen=True)
class ErrorReport:
    title: str
    message: str
    details: str | None = None


ReportListener = Callable[[ErrorReport], None]


class ErrorReporter:
    """Holds the error currently shown to the user; one at a time."""

    def __init__(self, listener: ReportListener | None = None, *, history_size: int = 50) -> None:
        self.current: ErrorReport | None = None
        self.history: deque[ErrorReport] = deque(maxlen=history_size)
        self._listener = listener

    def show(self, title: str, message: str, details: str | None = None) -> ErrorReport:
        report = ErrorReport(title=title, message=message, details=details)
        self.current = report
        self.history.append(report)
        logger.warning("ui.error_reported", extra={"error": f"{title}: {details or message}"})
        if self._listener is not None:
            self._listener(report)
        return report

    def clear(self) -> None:
        self.current = None
