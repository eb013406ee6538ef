from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Principal:
    username: str
    email: str
    secret_hash: str
    full_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def public_profile(self) -> dict[str, Optional[str]]:
        """Fields safe to return to clients (never the secret hash)."""
        return {
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
        }


@dataclass
class RefreshRecord:
    token: str
    username: str
    expires_at: datetime
    revoked: bool = False
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        token: str,
        username: str,
        ttl_seconds: int,
        user_agent: str | None = None,
        ip_address: str | None = None,
        *,
        now: Optional[datetime] = None,
    ) -> "RefreshRecord":
        issued = now or utcnow()
        return cls(
            token=token,
            username=username,
            expires_at=issued + timedelta(seconds=ttl_seconds),
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=issued,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
