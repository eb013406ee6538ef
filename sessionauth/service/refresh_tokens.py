from __future__ import annotations

import secrets
from datetime import datetime
from typing import Callable, Optional

from sessionauth.logging import get_logger
from sessionauth.service.errors import AuthFailure
from sessionauth.storage.models import Principal, RefreshRecord, utcnow

logger = get_logger(__name__)

DEFAULT_REFRESH_TTL_SECONDS = 7 * 24 * 60 * 60
DEFAULT_MAX_ACTIVE = 5


def _new_token_value() -> str:
    return secrets.token_urlsafe(48)


class RefreshTokenStore:
    """Lifecycle of server-side refresh records: create, validate, rotate, revoke.

    Capacity enforcement and rotation are single store operations so two
    requests for one principal cannot interleave between the check and the
    write.
    """

    def __init__(
        self,
        store,
        *,
        ttl_seconds: int = DEFAULT_REFRESH_TTL_SECONDS,
        max_active: int = DEFAULT_MAX_ACTIVE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_active = max_active
        self._clock = clock

    def _new_record(
        self, username: str, user_agent: Optional[str], address: Optional[str]
    ) -> RefreshRecord:
        return RefreshRecord.new(
            _new_token_value(),
            username,
            self.ttl_seconds,
            user_agent,
            address,
            now=self._clock(),
        )

    def create(
        self,
        principal: Principal,
        user_agent: Optional[str] = None,
        address: Optional[str] = None,
    ) -> RefreshRecord:
        record = self._new_record(principal.username, user_agent, address)
        evicted = self.store.create_refresh_record(record, max_active=self.max_active)
        if evicted:
            logger.info(
                "refresh_tokens_evicted",
                username=principal.username,
                revoked=evicted,
                max_active=self.max_active,
            )
        return record

    def find(self, token: str) -> Optional[RefreshRecord]:
        if not token:
            return None
        record = self.store.get_refresh_record(token)
        if record is None or record.revoked:
            return None
        return record

    def validate(self, record: RefreshRecord) -> bool:
        if record.revoked:
            return False
        if record.is_expired(self._clock()):
            # Expired records are revoked on sight; the purge deletes them later
            self.store.revoke_refresh_record(record.token)
            record.revoked = True
            return False
        return True

    def revoke(self, record: RefreshRecord) -> None:
        self.store.revoke_refresh_record(record.token)
        record.revoked = True

    def revoke_all(self, principal: Principal) -> int:
        revoked = self.store.revoke_all_refresh(principal.username)
        logger.info("refresh_tokens_revoked_all", username=principal.username, revoked=revoked)
        return revoked

    def rotate(
        self,
        old: RefreshRecord,
        user_agent: Optional[str] = None,
        address: Optional[str] = None,
    ) -> RefreshRecord | AuthFailure:
        """Swap ``old`` for a fresh record, or fail if ``old`` is no longer active."""
        replacement = self._new_record(old.username, user_agent, address)
        rotated = self.store.rotate_refresh_record(
            old.token, replacement, now=self._clock()
        )
        if not rotated:
            logger.warning(
                "refresh_token_reuse_rejected",
                username=old.username,
                ip_address=address,
            )
            return AuthFailure.token_invalid("Invalid or expired refresh token")
        old.revoked = True
        return replacement

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        removed = self.store.delete_expired_refresh(now or self._clock())
        logger.info("refresh_tokens_purged", removed=removed)
        return removed

    def count_active(self, principal: Principal) -> int:
        return self.store.count_active_refresh(principal.username)
