from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from sessionauth.logging import get_logger
from sessionauth.service.credentials import CredentialVerifier
from sessionauth.service.errors import AuthFailure, FailureKind
from sessionauth.service.rate_limit import RateLimiter
from sessionauth.service.refresh_tokens import RefreshTokenStore
from sessionauth.service.tokens import TokenIssuer
from sessionauth.service.transport import Carrier, SessionTransport
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import Principal

logger = get_logger(__name__)

REFRESHED_MESSAGE = "Token refreshed successfully"
LOGGED_OUT_MESSAGE = "Logged out successfully"
LOGGED_OUT_ALL_MESSAGE = "Logged out from all devices"
REFRESH_MISSING_MESSAGE = "Refresh token not found"
REFRESH_INVALID_MESSAGE = "Invalid or expired refresh token"


@dataclass
class FlowResult:
    carriers: list[Carrier] = field(default_factory=list)
    principal: Optional[Principal] = None
    message: Optional[str] = None
    failure: Optional[AuthFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def login_key(address: str, username: str) -> str:
    return f"{address}:{username}"


def register_key(address: str) -> str:
    return f"register:{address}"


class AuthOrchestrator:
    """Composes the auth components into the login, refresh, logout and register flows.

    Every flow returns a ``FlowResult``; expected failures travel as values
    and never as exceptions. Argon2 work runs in a worker thread so the event
    loop stays responsive.
    """

    def __init__(
        self,
        store,
        *,
        credentials: CredentialVerifier,
        tokens: TokenIssuer,
        refresh_tokens: RefreshTokenStore,
        transport: SessionTransport,
        login_limiter: RateLimiter,
        register_limiter: RateLimiter,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.tokens = tokens
        self.refresh_tokens = refresh_tokens
        self.transport = transport
        self.login_limiter = login_limiter
        self.register_limiter = register_limiter

    def _limited(self, limiter: RateLimiter, key: str) -> Optional[AuthFailure]:
        if not limiter.is_limited(key):
            return None
        return AuthFailure.rate_limited(max(1, limiter.seconds_until_unlock(key)))

    def _invalid_refresh(self) -> FlowResult:
        return FlowResult(
            carriers=self.transport.clear(),
            failure=AuthFailure.token_invalid(REFRESH_INVALID_MESSAGE),
        )

    async def login(
        self,
        username: str,
        secret: str,
        address: str,
        user_agent: Optional[str] = None,
    ) -> FlowResult:
        key = login_key(address, username)
        limited = self._limited(self.login_limiter, key)
        if limited:
            logger.warning(
                "login_rate_limited",
                username=username,
                ip_address=address,
                retry_after_seconds=limited.retry_after_seconds,
            )
            return FlowResult(failure=limited)

        outcome = await asyncio.to_thread(self.credentials.verify, username, secret)
        if isinstance(outcome, AuthFailure):
            self.login_limiter.record_failure(key)
            remaining = self.login_limiter.remaining_attempts(key)
            logger.warning(
                "login_failed",
                username=username,
                ip_address=address,
                remaining_attempts=remaining,
            )
            return FlowResult(failure=AuthFailure.invalid_credentials(remaining))

        self.login_limiter.record_success(key)
        access = self.tokens.issue_access_token(outcome.username)
        record = await asyncio.to_thread(
            self.refresh_tokens.create, outcome, user_agent, address
        )
        logger.info("login_succeeded", username=outcome.username, ip_address=address)
        return FlowResult(
            carriers=self.transport.encode(access, record.token),
            principal=outcome,
        )

    async def refresh(
        self,
        refresh_token: Optional[str],
        address: str,
        user_agent: Optional[str] = None,
    ) -> FlowResult:
        if not refresh_token:
            return FlowResult(failure=AuthFailure.unauthenticated(REFRESH_MISSING_MESSAGE))

        record = await asyncio.to_thread(self.refresh_tokens.find, refresh_token)
        if record is None or not await asyncio.to_thread(
            self.refresh_tokens.validate, record
        ):
            logger.info("refresh_rejected", ip_address=address)
            return self._invalid_refresh()

        principal = await asyncio.to_thread(self.store.get_principal, record.username)
        if principal is None:
            logger.warning("refresh_owner_missing", username=record.username)
            return self._invalid_refresh()

        access = self.tokens.issue_access_token(principal.username)
        rotated = await asyncio.to_thread(
            self.refresh_tokens.rotate, record, user_agent, address
        )
        if isinstance(rotated, AuthFailure):
            return FlowResult(carriers=self.transport.clear(), failure=rotated)
        return FlowResult(
            carriers=self.transport.encode(access, rotated.token),
            principal=principal,
            message=REFRESHED_MESSAGE,
        )

    async def logout(self, refresh_token: Optional[str]) -> FlowResult:
        if refresh_token:
            record = await asyncio.to_thread(self.refresh_tokens.find, refresh_token)
            if record is not None:
                await asyncio.to_thread(self.refresh_tokens.revoke, record)
                logger.info("logout", username=record.username)
        return FlowResult(carriers=self.transport.clear(), message=LOGGED_OUT_MESSAGE)

    async def logout_all(self, access_token: Optional[str]) -> FlowResult:
        current = await self.current_principal(access_token)
        if not current.ok:
            return current
        principal = current.principal
        await asyncio.to_thread(self.refresh_tokens.revoke_all, principal)
        return FlowResult(
            carriers=self.transport.clear(),
            principal=principal,
            message=LOGGED_OUT_ALL_MESSAGE,
        )

    async def register(
        self,
        username: str,
        secret: str,
        email: str,
        full_name: Optional[str],
        address: str,
    ) -> FlowResult:
        key = register_key(address)
        limited = self._limited(self.register_limiter, key)
        if limited:
            logger.warning("register_rate_limited", ip_address=address)
            return FlowResult(failure=limited)

        duplicate_field = None
        if await asyncio.to_thread(self.store.get_principal, username):
            duplicate_field = "username"
        elif await asyncio.to_thread(self.store.get_principal_by_email, email):
            duplicate_field = "email"
        if duplicate_field:
            return self._duplicate(key, duplicate_field, address)

        secret_hash = await asyncio.to_thread(self.credentials.hash_secret, secret)
        try:
            principal = await asyncio.to_thread(
                self.store.create_principal, username, email, secret_hash, full_name
            )
        except ConstraintViolation as exc:
            return self._duplicate(key, exc.field or "username", address)
        logger.info("principal_registered", username=principal.username, ip_address=address)
        return FlowResult(principal=principal)

    def _duplicate(self, key: str, field_name: str, address: str) -> FlowResult:
        self.register_limiter.record_failure(key)
        logger.info("register_duplicate", field=field_name, ip_address=address)
        return FlowResult(failure=AuthFailure.duplicate(field_name))

    async def current_principal(self, access_token: Optional[str]) -> FlowResult:
        if not access_token:
            return FlowResult(failure=AuthFailure.unauthenticated())
        verified = self.tokens.verify_access(access_token)
        if verified.error is FailureKind.TOKEN_EXPIRED:
            return FlowResult(failure=AuthFailure.token_expired())
        if verified.error is not None:
            return FlowResult(failure=AuthFailure.token_invalid())
        principal = await asyncio.to_thread(self.store.get_principal, verified.principal_id)
        if principal is None:
            return FlowResult(failure=AuthFailure.unauthenticated())
        return FlowResult(principal=principal)
