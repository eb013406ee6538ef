from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from enum import Enum
from typing import Any, Callable, NamedTuple, Optional

from sessionauth.logging import get_logger
from sessionauth.service.errors import FailureKind

logger = get_logger(__name__)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH_MARKER = "refresh"


class VerifiedToken(NamedTuple):
    principal_id: Optional[str]
    kind: Optional[TokenKind]
    error: Optional[FailureKind]

    @property
    def ok(self) -> bool:
        return self.error is None


def _invalid() -> VerifiedToken:
    return VerifiedToken(None, None, FailureKind.TOKEN_INVALID)


class TokenIssuer:
    """Mints and checks HS256 signed tokens carrying a principal id and a kind."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock

    def issue_access_token(self, principal_id: str) -> str:
        return self._issue(principal_id, TokenKind.ACCESS, self.access_ttl_seconds)

    def issue_refresh_marker(self, principal_id: str) -> str:
        return self._issue(principal_id, TokenKind.REFRESH_MARKER, self.refresh_ttl_seconds)

    def _issue(self, principal_id: str, kind: TokenKind, ttl_seconds: int) -> str:
        issued_at = int(self._clock())
        return self._encode_jwt(
            {
                "sub": principal_id,
                "type": kind.value,
                "iat": issued_at,
                "exp": issued_at + ttl_seconds,
                "iss": self.issuer,
            }
        )

    def verify(self, token: str) -> VerifiedToken:
        """Check signature, issuer, kind and expiry.

        An expired token keeps its principal and kind so callers can tell it
        apart from a forged or malformed one.
        """
        payload = self._decode_jwt(token)
        if payload is None:
            return _invalid()
        try:
            kind = TokenKind(payload.get("type"))
        except ValueError:
            logger.warning("jwt_unknown_kind")
            return _invalid()
        principal_id = payload.get("sub")
        exp = payload.get("exp")
        if not isinstance(principal_id, str) or not principal_id:
            return _invalid()
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return _invalid()
        if exp <= self._clock():
            return VerifiedToken(principal_id, kind, FailureKind.TOKEN_EXPIRED)
        return VerifiedToken(principal_id, kind, None)

    def verify_access(self, token: str) -> VerifiedToken:
        verified = self.verify(token)
        if verified.kind is not None and verified.kind is not TokenKind.ACCESS:
            return _invalid()
        return verified

    def extract_principal(self, token: str) -> Optional[str]:
        """Principal id from a well-signed token, ignoring expiry."""
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        principal_id = payload.get("sub")
        return principal_id if isinstance(principal_id, str) and principal_id else None

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted; anything else is an algorithm confusion attempt
        try:
            header = json.loads(self._decode_segment(header_b64))
            if not isinstance(header, dict) or header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm")
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(
            expected_sig.encode("ascii"), sig_b64.encode("utf-8", "surrogatepass")
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        return payload
