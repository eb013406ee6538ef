from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, NamedTuple, Optional

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
UNKNOWN_ADDRESS = "unknown"


@dataclass(frozen=True)
class Carrier:
    """One cookie to set on the outgoing response."""

    name: str
    value: str
    max_age: int
    http_only: bool = True
    secure: bool = True
    path: str = "/"
    same_site: str = "strict"
    domain: Optional[str] = None


class InboundTokens(NamedTuple):
    access_token: Optional[str]
    refresh_token: Optional[str]


def _bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    value = value.strip()
    return value or None


class SessionTransport:
    """Moves tokens between the service and HTTP cookies and headers."""

    def __init__(
        self,
        *,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        secure: bool = True,
        domain: Optional[str] = None,
    ) -> None:
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.secure = secure
        self.domain = domain

    def _carrier(self, name: str, value: str, max_age: int) -> Carrier:
        return Carrier(
            name=name,
            value=value,
            max_age=max_age,
            secure=self.secure,
            domain=self.domain,
        )

    def encode(self, access_token: str, refresh_token: str) -> list[Carrier]:
        return [
            self._carrier(ACCESS_COOKIE, access_token, self.access_ttl_seconds),
            self._carrier(REFRESH_COOKIE, refresh_token, self.refresh_ttl_seconds),
        ]

    def clear(self) -> list[Carrier]:
        return [
            self._carrier(ACCESS_COOKIE, "", 0),
            self._carrier(REFRESH_COOKIE, "", 0),
        ]

    def decode(
        self, cookies: Mapping[str, str], authorization: Optional[str] = None
    ) -> InboundTokens:
        """Read tokens from cookies; the access token falls back to a bearer header."""
        access = cookies.get(ACCESS_COOKIE) or _bearer(authorization)
        refresh = cookies.get(REFRESH_COOKIE) or None
        return InboundTokens(access or None, refresh)

    @staticmethod
    def resolve_client_address(
        headers: Mapping[str, str], peer: Optional[str] = None
    ) -> str:
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
        real_ip = (headers.get("x-real-ip") or "").strip()
        if real_ip:
            return real_ip
        return peer or UNKNOWN_ADDRESS
