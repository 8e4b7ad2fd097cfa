from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

import httpx

from constructor_auth.config import Settings
from constructor_auth.logging import get_logger
from constructor_auth.service.audit import AuditLogService
from constructor_auth.service.crypto import CryptoService
from constructor_auth.service.errors import (
    EntityDeletedError,
    ForbiddenError,
    UnauthorizedError,
)
from constructor_auth.service.notifications import NotificationDispatcher
from constructor_auth.service.tokens import TokenService
from constructor_auth.storage.common import normalize_email
from constructor_auth.storage.models import (
    AuditContext,
    AuditLogAction,
    OAuthIdentity,
    OAuthPayload,
    OAuthType,
    TokenPair,
    User,
)
from constructor_auth.storage.users import UserRepository

logger = get_logger(__name__)

GOOGLE_ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})


class OAuthVerificationError(Exception):
    """The provider token could not be turned into a trusted identity."""


class OAuthStrategy(ABC):
    """Login through one external identity provider.

    Subclasses implement :meth:`verify`. They may override
    :meth:`registration` to provision unknown users; the default refuses, so
    a provider is login-only unless it opts in.
    """

    provider_type: OAuthType

    def __init__(
        self,
        users: UserRepository,
        tokens: TokenService,
        audit: AuditLogService,
        notifications: NotificationDispatcher,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.audit = audit
        self.notifications = notifications

    @abstractmethod
    async def verify(self, payload: OAuthPayload) -> OAuthIdentity:
        """Validate the provider token; raise OAuthVerificationError when it is not trusted."""

    async def registration(
        self, payload: OAuthPayload, identity: OAuthIdentity, context: AuditContext
    ) -> User:
        raise ForbiddenError(
            f"Registration is not supported for {self.provider_type.value}"
        )

    def _metadata(self, **extra) -> dict:
        return {"type": self.provider_type.value, **extra}

    async def _register(
        self, payload: OAuthPayload, identity: OAuthIdentity, context: AuditContext
    ) -> User:
        try:
            user = await self.registration(payload, identity, context)
        except UnauthorizedError:
            raise
        except ForbiddenError as exc:
            self.audit.create_log(
                AuditLogAction.OAUTH_REGISTRATION_FAILED,
                context,
                success=False,
                error_message=exc.message,
                metadata=self._metadata(),
            )
            raise
        except Exception as exc:
            logger.error(
                "oauth_registration_failed",
                provider=self.provider_type.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self.audit.create_log(
                AuditLogAction.OAUTH_REGISTRATION_FAILED,
                context,
                success=False,
                error_message=str(exc) or type(exc).__name__,
                metadata=self._metadata(),
            )
            raise UnauthorizedError("Invalid OAuth token") from exc
        self.audit.create_log(
            AuditLogAction.OAUTH_REGISTRATION_SUCCESS,
            context,
            user=user,
            success=True,
            metadata=self._metadata(),
        )
        self.notifications.notify_registration(user)
        return user

    async def execute(self, payload: OAuthPayload, context: AuditContext) -> TokenPair:
        try:
            identity = await self.verify(payload)
        except OAuthVerificationError as exc:
            logger.warning(
                "oauth_verification_failed", provider=self.provider_type.value, reason=str(exc)
            )
            self.audit.create_log(
                AuditLogAction.OAUTH_LOGIN_FAILED,
                context,
                success=False,
                error_message=str(exc),
                metadata=self._metadata(),
            )
            raise UnauthorizedError("Invalid OAuth token") from exc

        registered = False
        try:
            user = await self.users.find_by_email(identity.email)
            if user is None:
                user = await self._register(payload, identity, context)
                registered = True
            if user.is_deleted:
                self.audit.create_log(
                    AuditLogAction.OAUTH_LOGIN_FAILED,
                    context,
                    user=user,
                    success=False,
                    error_message="User is deleted",
                    metadata=self._metadata(),
                )
                raise EntityDeletedError("User")
            if not user.is_active:
                self.audit.create_log(
                    AuditLogAction.OAUTH_LOGIN_FAILED,
                    context,
                    user=user,
                    success=False,
                    error_message="User is inactive",
                    metadata=self._metadata(),
                )
                raise ForbiddenError("User is inactive")
            pair = await self.tokens.issue_token_pair(user)
        except (UnauthorizedError, ForbiddenError, EntityDeletedError):
            raise
        except Exception as exc:
            logger.error(
                "oauth_login_failed",
                provider=self.provider_type.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self.audit.create_log(
                AuditLogAction.OAUTH_LOGIN_FAILED,
                context,
                success=False,
                error_message=str(exc) or type(exc).__name__,
                metadata=self._metadata(),
            )
            raise UnauthorizedError("Invalid OAuth token") from exc

        self.audit.create_log(
            AuditLogAction.OAUTH_LOGIN_SUCCESS,
            context,
            user=user,
            success=True,
            metadata=self._metadata(registered=registered),
        )
        logger.info(
            "oauth_login_succeeded",
            provider=self.provider_type.value,
            user_id=user.id,
            registered=registered,
        )
        return pair


class GoogleStrategy(OAuthStrategy):
    """Google ID-token login with self-registration of unknown emails."""

    provider_type = OAuthType.GOOGLE

    def __init__(
        self,
        users: UserRepository,
        tokens: TokenService,
        audit: AuditLogService,
        notifications: NotificationDispatcher,
        *,
        crypto: CryptoService,
        settings: Settings,
    ) -> None:
        super().__init__(users, tokens, audit, notifications)
        self.crypto = crypto
        self.client_id = settings.google_client_id
        self.tokeninfo_url = settings.google_tokeninfo_url
        self.timeout = settings.oauth_http_timeout

    async def _fetch_claims(self, id_token: str) -> dict:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False
            ) as client:
                response = await client.get(self.tokeninfo_url, params={"id_token": id_token})
                response.raise_for_status()
                claims = response.json()
        except httpx.HTTPStatusError as exc:
            raise OAuthVerificationError(
                f"Google rejected the token ({exc.response.status_code})"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise OAuthVerificationError("Google token verification failed") from exc
        if not isinstance(claims, dict):
            raise OAuthVerificationError("Invalid Google token - no payload")
        return claims

    async def verify(self, payload: OAuthPayload) -> OAuthIdentity:
        if not payload.token:
            raise OAuthVerificationError("OAuth token is missing")
        if not self.client_id:
            raise OAuthVerificationError("Google client id is not configured")
        claims = await self._fetch_claims(payload.token)
        if claims.get("aud") != self.client_id:
            raise OAuthVerificationError("Google token audience mismatch")
        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise OAuthVerificationError("Google token issuer mismatch")
        email = claims.get("email")
        if not email:
            raise OAuthVerificationError("Email not provided by Google")
        if str(claims.get("email_verified", "true")).lower() == "false":
            raise OAuthVerificationError("Email not verified by Google")
        return OAuthIdentity(
            email=normalize_email(email),
            subject=claims.get("sub"),
            first_name=claims.get("given_name"),
            last_name=claims.get("family_name"),
            picture=claims.get("picture"),
        )

    async def registration(
        self, payload: OAuthPayload, identity: OAuthIdentity, context: AuditContext
    ) -> User:
        user, _ = await self.users.create_with_profile(
            email=identity.email,
            username=identity.email,
            password=self.crypto.encrypt_password(self.crypto.generate_password()),
            first_name=identity.first_name or "",
            last_name=identity.last_name or "",
            profile={"photo": identity.picture},
        )
        logger.info("oauth_user_registered", provider=self.provider_type.value, user_id=user.id)
        return user


class OAuthStrategyRegistry:
    """Maps provider type to its strategy; built once at startup."""

    def __init__(self, strategies: Iterable[OAuthStrategy]) -> None:
        self._strategies: Dict[OAuthType, OAuthStrategy] = {}
        for strategy in strategies:
            self._strategies[strategy.provider_type] = strategy

    @property
    def types(self) -> List[str]:
        return sorted(t.value for t in self._strategies)

    def get_strategy(self, provider_type: Optional[str]) -> OAuthStrategy:
        try:
            key = OAuthType(provider_type)
        except ValueError:
            key = None
        strategy = self._strategies.get(key) if key else None
        if strategy is None:
            raise ForbiddenError(f"OAuth type {provider_type} not supported")
        return strategy


class OAuthService:
    def __init__(self, registry: OAuthStrategyRegistry) -> None:
        self.registry = registry

    async def login(self, payload: OAuthPayload, context: AuditContext) -> TokenPair:
        strategy = self.registry.get_strategy(payload.type)
        return await strategy.execute(payload, context)
