from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote_plus

from antares.logging import get_logger
from antares.service.auth import AuthService
from antares.service.errors import TokenInvalidError

logger = get_logger(__name__)


@dataclass(frozen=True)
class GateDecision:
    status_code: int
    location: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return 200 <= self.status_code < 300


ALLOW = GateDecision(200)
DENY = GateDecision(403)


def build_login_redirect(
    login_url: str,
    forwarded_proto: Optional[str],
    forwarded_host: Optional[str],
    forwarded_uri: Optional[str],
) -> str:
    """Login URL carrying the original destination as ``returnUrl``.

    Without a forwarded protocol and host the original URL cannot be rebuilt,
    so the bare login URL is returned.
    """
    if not forwarded_proto or not forwarded_host:
        return login_url
    original = f"{forwarded_proto}://{forwarded_host}{forwarded_uri or ''}"
    separator = "&" if "?" in login_url else "?"
    return f"{login_url}{separator}returnUrl={quote_plus(original, safe='')}"


class ForwardAuthGate:
    """Allow/deny decisions for a reverse proxy guarding other services.

    Read-only: only token validation and a principal lookup, nothing is written.
    """

    def __init__(self, auth: AuthService, login_url: str) -> None:
        self.auth = auth
        self.login_url = login_url

    def decide(
        self,
        access_token: Optional[str],
        *,
        forwarded_proto: Optional[str] = None,
        forwarded_host: Optional[str] = None,
        forwarded_uri: Optional[str] = None,
    ) -> GateDecision:
        try:
            user = self.auth.resolve_principal(access_token)
        except TokenInvalidError:
            location = build_login_redirect(
                self.login_url, forwarded_proto, forwarded_host, forwarded_uri
            )
            return GateDecision(302, location=location)
        if not user.is_admin:
            logger.info("forward_auth_denied", user_id=user.id, role=user.role)
            return DENY
        return ALLOW
