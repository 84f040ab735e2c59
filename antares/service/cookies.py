from __future__ import annotations

import hmac
import secrets
from typing import Optional

from starlette.requests import Request
from starlette.responses import Response

from antares.config import Settings

CSRF_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


def new_csrf_token() -> str:
    return secrets.token_urlsafe(32)


def csrf_tokens_match(cookie_token: Optional[str], header_token: Optional[str]) -> bool:
    """Double-submit check: header must equal the cookie, compared in constant time."""
    if not cookie_token or not header_token:
        return False
    return hmac.compare_digest(cookie_token.encode(), header_token.encode())


class SessionCookies:
    """Mints and clears the access, refresh and CSRF cookies.

    Clearing reuses the exact attributes used when setting, otherwise browsers
    keep the original cookie.
    """

    def __init__(
        self,
        *,
        access_cookie: str = "access_token",
        refresh_cookie: str = "refresh_token",
        csrf_cookie: str = "XSRF-TOKEN",
        csrf_header: str = "X-XSRF-TOKEN",
        secure: bool = True,
        domain: Optional[str] = None,
        access_max_age: int = 900,
        refresh_max_age: int = 604800,
    ) -> None:
        self.access_cookie = access_cookie
        self.refresh_cookie = refresh_cookie
        self.csrf_cookie = csrf_cookie
        self.csrf_header = csrf_header
        self.secure = secure
        self.domain = domain
        self.access_max_age = access_max_age
        self.refresh_max_age = refresh_max_age

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionCookies":
        return cls(
            access_cookie=settings.access_token_cookie,
            refresh_cookie=settings.refresh_token_cookie,
            csrf_cookie=settings.csrf_cookie,
            csrf_header=settings.csrf_header,
            secure=settings.cookie_secure,
            domain=settings.cookie_domain,
            access_max_age=settings.access_token_ttl_seconds,
            refresh_max_age=settings.refresh_token_ttl_seconds,
        )

    def _set(
        self,
        response: Response,
        name: str,
        value: str,
        *,
        max_age: Optional[int],
        httponly: bool = True,
    ) -> None:
        response.set_cookie(
            name,
            value,
            max_age=max_age,
            path="/",
            domain=self.domain,
            secure=self.secure,
            httponly=httponly,
            samesite="strict",
        )

    def set_session(self, response: Response, access_token: str, refresh_token: str) -> None:
        self._set(response, self.access_cookie, access_token, max_age=self.access_max_age)
        self._set(response, self.refresh_cookie, refresh_token, max_age=self.refresh_max_age)

    def clear_session(self, response: Response) -> None:
        self._set(response, self.access_cookie, "", max_age=0)
        self._set(response, self.refresh_cookie, "", max_age=0)

    def issue_csrf(self, response: Response, token: Optional[str] = None) -> str:
        """Set a script-readable CSRF cookie for the SPA to echo back."""
        token = token or new_csrf_token()
        self._set(response, self.csrf_cookie, token, max_age=None, httponly=False)
        return token

    @staticmethod
    def _bearer_token(request: Request) -> Optional[str]:
        authorization = request.headers.get("Authorization", "")
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
        return None

    def has_bearer(self, request: Request) -> bool:
        return self._bearer_token(request) is not None

    def read_access_token(self, request: Request) -> Optional[str]:
        token = request.cookies.get(self.access_cookie)
        if token:
            return token
        return self._bearer_token(request)

    def read_refresh_token(self, request: Request) -> Optional[str]:
        return request.cookies.get(self.refresh_cookie) or None

    def csrf_valid(self, request: Request) -> bool:
        return csrf_tokens_match(
            request.cookies.get(self.csrf_cookie), request.headers.get(self.csrf_header)
        )
