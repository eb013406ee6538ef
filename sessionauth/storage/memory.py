from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional

from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import Principal, RefreshRecord, utcnow


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Every mutation runs under one re-entrant lock, which gives the same
    all-or-nothing behaviour the Postgres store gets from a transaction.
    Records handed out are copies; callers change state only through methods.
    """

    def __init__(self) -> None:
        self.principals: Dict[str, Principal] = {}
        self.refresh_records: Dict[str, RefreshRecord] = {}
        self._data_lock = threading.RLock()

    # principals
    def create_principal(
        self,
        username: str,
        email: str,
        secret_hash: str,
        full_name: Optional[str] = None,
    ) -> Principal:
        with self._data_lock:
            if username in self.principals:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if any(existing.email == email for existing in self.principals.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                username=username,
                email=email,
                secret_hash=secret_hash,
                full_name=full_name,
            )
            self.principals[username] = principal
            return replace(principal)

    def get_principal(self, username: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(username)
            return replace(principal) if principal else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._data_lock:
            principal = next(
                (p for p in self.principals.values() if p.email == email), None
            )
            return replace(principal) if principal else None

    def update_principal(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
        secret_hash: Optional[str] = None,
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(username)
            if not principal:
                return None
            if email is not None and email != principal.email:
                if any(
                    p.email == email for p in self.principals.values() if p.username != username
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                principal.email = email
            if full_name is not None:
                principal.full_name = full_name
            if secret_hash is not None:
                principal.secret_hash = secret_hash
            principal.updated_at = utcnow()
            return replace(principal)

    def count_principals(self) -> int:
        with self._data_lock:
            return len(self.principals)

    # refresh tokens
    def create_refresh_record(self, record: RefreshRecord, *, max_active: int) -> int:
        """Insert ``record``, first revoking every active record if at capacity.

        Returns the number of records revoked to make room.
        """
        with self._data_lock:
            if record.username not in self.principals:
                raise ConstraintViolation(
                    "refresh token owner missing", {"username": record.username}
                )
            if record.token in self.refresh_records:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            revoked = 0
            if self._count_active(record.username) >= max_active:
                revoked = self._revoke_all(record.username)
            self.refresh_records[record.token] = replace(record)
            return revoked

    def get_refresh_record(self, token: str) -> Optional[RefreshRecord]:
        with self._data_lock:
            record = self.refresh_records.get(token)
            return replace(record) if record else None

    def count_active_refresh(self, username: str) -> int:
        with self._data_lock:
            return self._count_active(username)

    def revoke_refresh_record(self, token: str) -> bool:
        """Mark one record revoked; False when it was missing or already revoked."""
        with self._data_lock:
            record = self.refresh_records.get(token)
            if not record or record.revoked:
                return False
            record.revoked = True
            return True

    def revoke_all_refresh(self, username: str) -> int:
        with self._data_lock:
            return self._revoke_all(username)

    def rotate_refresh_record(
        self, old_token: str, replacement: RefreshRecord, *, now: datetime
    ) -> bool:
        """Revoke ``old_token`` and insert ``replacement`` as one step.

        Only an active, unexpired old record can be rotated; otherwise nothing
        changes and False is returned.
        """
        with self._data_lock:
            old = self.refresh_records.get(old_token)
            if not old or old.revoked or old.is_expired(now):
                return False
            if replacement.token in self.refresh_records:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            old.revoked = True
            self.refresh_records[replacement.token] = replace(replacement)
            return True

    def delete_expired_refresh(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                token
                for token, record in self.refresh_records.items()
                if record.expires_at < before
            ]
            for token in stale:
                self.refresh_records.pop(token, None)
            return len(stale)

    def _count_active(self, username: str) -> int:
        return sum(
            1
            for record in self.refresh_records.values()
            if record.username == username and not record.revoked
        )

    def _revoke_all(self, username: str) -> int:
        revoked = 0
        for record in self.refresh_records.values():
            if record.username == username and not record.revoked:
                record.revoked = True
                revoked += 1
        return revoked

    def close(self) -> None:
        return None
