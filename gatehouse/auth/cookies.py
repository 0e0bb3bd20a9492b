"""
Scoped secret store: the per-request, caller-held key/value capability (cookies).

The core only depends on the `SecretStore` protocol; `ResponseCookieStore` adapts it to
FastAPI/Starlette by reading request cookies and queueing `Set-Cookie` writes that are
applied to whatever response the route finally returns.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol


class SecretStore(Protocol):
    def get(self, name: str) -> Optional[str]:
        """Return the current value for name, or None."""

    def set(
        self,
        name: str,
        value: str,
        *,
        expires: datetime,
        path: str,
        secure: bool,
        http_only: bool = True,
        same_site: str = "lax",
    ) -> None:
        """Store value under name with the given cookie attributes."""

    def delete(self, name: str, *, path: str, secure: bool = False) -> None:
        """Remove name (idempotent). `secure` must match how the value was set."""


class ResponseCookieStore:
    def __init__(self, request_cookies: Mapping[str, str]) -> None:
        self._incoming = dict(request_cookies or {})
        self._pending: Dict[str, Optional[str]] = {}
        self._writes: List[Dict[str, Any]] = []

    def get(self, name: str) -> Optional[str]:
        if name in self._pending:
            return self._pending[name]
        value = (self._incoming.get(name) or "").strip()
        return value or None

    def set(
        self,
        name: str,
        value: str,
        *,
        expires: datetime,
        path: str,
        secure: bool,
        http_only: bool = True,
        same_site: str = "lax",
    ) -> None:
        max_age = int((expires - datetime.now(timezone.utc)).total_seconds())
        self._pending[name] = value
        self._writes.append(
            {
                "key": name,
                "value": value,
                "max_age": max(0, max_age),
                "expires": expires.astimezone(timezone.utc),
                "httponly": http_only,
                "secure": secure,
                "samesite": same_site,
                "path": path,
            }
        )

    def delete(self, name: str, *, path: str, secure: bool = False) -> None:
        self._pending[name] = None
        self._writes.append(
            {
                "key": name,
                "value": "",
                "max_age": 0,
                "httponly": True,
                "secure": secure,
                "samesite": "lax",
                "path": path,
            }
        )

    @property
    def writes(self) -> List[Dict[str, Any]]:
        return list(self._writes)

    def apply(self, response: Any) -> Any:
        """Emit the queued cookie writes on a Starlette response (in order)."""
        for kwargs in self._writes:
            response.set_cookie(**kwargs)
        return response
