from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from constructor_auth.config import DURATION_PATTERN, Settings
from constructor_auth.logging import get_logger
from constructor_auth.service.errors import UnauthorizedError
from constructor_auth.storage.common import CredentialStore
from constructor_auth.storage.models import Token, TokenPair, User
from constructor_auth.storage.users import UserRepository

logger = get_logger(__name__)

DEFAULT_REFRESH_TTL = timedelta(days=7)

_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def parse_duration(value: Optional[str], fallback: timedelta = DEFAULT_REFRESH_TTL) -> timedelta:
    """Turn ``15m`` / ``7d`` style strings into a timedelta; bad input gives ``fallback``."""
    match = DURATION_PATTERN.match((value or "").strip())
    if not match:
        return fallback
    amount, unit = match.groups()
    return timedelta(**{_UNITS[unit]: int(amount)})


class TokenService:
    """Signs access tokens and manages the lifecycle of stored refresh tokens."""

    def __init__(
        self,
        store: CredentialStore,
        users: UserRepository,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.users = users
        self.settings = settings
        self._clock = clock
        self.access_ttl = parse_duration(
            settings.jwt_access_expires_in, fallback=timedelta(minutes=15)
        )
        self.refresh_ttl = parse_duration(settings.jwt_refresh_expires_in)

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return self._clock() if self._clock else datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        signature = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(signature)

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

    def _decode_jwt(self, token: str, *, token_type: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Only HS256 is accepted, whatever the header claims
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        # compare_digest rejects non-ASCII str with TypeError
        if not sig_b64.isascii():
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("token_type") != token_type:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp():
            return None
        return payload

    def create_refresh_token(self, user: User) -> tuple[str, datetime]:
        now = self._now()
        expires_at = now + self.refresh_ttl
        token = self._encode_jwt(
            {
                "sub": str(user.id),
                "jti": uuid.uuid4().hex,
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
                "iss": self.settings.jwt_issuer,
                "token_type": "refresh",
            }
        )
        return token, expires_at

    def persist_token(self, user: User, token: str, expires_at: datetime) -> Token:
        return self.store.save_token(user.id, token, expires_at)

    def sign_access_token(self, user: User) -> str:
        now = self._now()
        return self._encode_jwt(
            {
                "sub": str(user.id),
                "is_super": user.is_super,
                "iat": int(now.timestamp()),
                "exp": int((now + self.access_ttl).timestamp()),
                "iss": self.settings.jwt_issuer,
                "token_type": "access",
            }
        )

    async def create_access_token(self, token: Token, user: Optional[User] = None) -> TokenPair:
        """Pair a fresh access token with an already persisted refresh token."""
        owner = user or await self.users.find_one(token.user_id)
        return TokenPair(access_token=self.sign_access_token(owner), refresh_token=token.token)

    async def issue_token_pair(self, user: User) -> TokenPair:
        refresh_token, expires_at = self.create_refresh_token(user)
        token = self.persist_token(user, refresh_token, expires_at)
        return await self.create_access_token(token, user)

    async def refresh(self, refresh_token: str) -> tuple[str, Token]:
        """Mint a new access token from a stored, unexpired refresh token."""
        stored = self.store.get_token(refresh_token)
        if not stored:
            raise UnauthorizedError("Invalid refresh token")
        payload = self._decode_jwt(refresh_token, token_type="refresh")
        if not payload or payload.get("sub") != str(stored.user_id):
            raise UnauthorizedError("Invalid refresh token")
        if stored.expires_at <= self._now():
            logger.info("refresh_token_expired", user_id=stored.user_id, token_id=stored.id)
            raise UnauthorizedError("Invalid refresh token")
        user = await self.users.get(stored.user_id)
        if not user or user.is_deleted or not user.is_active:
            raise UnauthorizedError("Invalid refresh token")
        return self.sign_access_token(user), stored

    def sign_out(self, user_id: int) -> int:
        removed = self.store.delete_tokens_for_user(user_id)
        logger.info("refresh_tokens_revoked", user_id=user_id, count=removed)
        return removed

    def decode_access_token(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode_jwt(token, token_type="access")
