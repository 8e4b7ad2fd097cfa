from __future__ import annotations

from datetime import date
from typing import Any, Dict, Optional

from constructor_auth.logging import get_logger
from constructor_auth.service.audit import AuditLogService
from constructor_auth.service.codes import CodeService
from constructor_auth.service.crypto import CryptoService
from constructor_auth.service.errors import (
    AlreadyExistEntityError,
    EmailAlreadyExistsError,
    EntityDeletedError,
    ForbiddenError,
    InvalidCodeError,
    NotFoundEntityError,
    UnauthorizedError,
    ValidationError,
)
from constructor_auth.service.notifications import NotificationDispatcher
from constructor_auth.service.oauth import OAuthService
from constructor_auth.service.tokens import TokenService
from constructor_auth.storage.common import CredentialStore, normalize_email
from constructor_auth.storage.models import (
    PROFILE_FIELDS,
    USER_MUTABLE_FIELDS,
    AuditContext,
    AuditLogAction,
    CodeType,
    OAuthPayload,
    Profile,
    TokenPair,
    User,
)
from constructor_auth.storage.users import UserRepository

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid username or password"
OWN_NAME_FIELDS = frozenset({"first_name", "last_name"})


class AuthService:
    """Coordinates sign-up, sign-in, refresh, recovery, OAuth and admin user operations.

    Every caller-visible failure writes an audit row with the specific reason
    before the generic error is raised. Notifications are dispatched in the
    background and never awaited here.
    """

    def __init__(
        self,
        *,
        store: CredentialStore,
        users: UserRepository,
        crypto: CryptoService,
        codes: CodeService,
        tokens: TokenService,
        audit: AuditLogService,
        notifications: NotificationDispatcher,
        oauth: OAuthService,
    ) -> None:
        self.store = store
        self.users = users
        self.crypto = crypto
        self.codes = codes
        self.tokens = tokens
        self.audit = audit
        self.notifications = notifications
        self.oauth = oauth
        self.logger = logger

    # sign-up
    async def sign_up_init(self, email: str, context: Optional[AuditContext] = None) -> None:
        email = normalize_email(email)
        if await self.users.find_by_email(email):
            self.audit.create_log(
                AuditLogAction.SIGN_UP_FAILED,
                context,
                success=False,
                error_message="Email already exists",
                metadata={"email": email},
            )
            raise EmailAlreadyExistsError()
        code = self.codes.generate_code(email, CodeType.SIGNUP)
        self.notifications.send_code(email, code)
        self.audit.create_log(
            AuditLogAction.SIGN_UP_INIT, context, success=True, metadata={"email": email}
        )

    async def sign_up(
        self,
        *,
        email: str,
        password: str,
        code: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
        context: Optional[AuditContext] = None,
    ) -> TokenPair:
        email = normalize_email(email)
        if not self.codes.verify_code(email, code, CodeType.SIGNUP):
            self.audit.create_log(
                AuditLogAction.SIGN_UP_FAILED,
                context,
                success=False,
                error_message="Invalid verification code",
                metadata={"email": email},
            )
            raise InvalidCodeError()
        if await self.users.find_by_email(email):
            self.audit.create_log(
                AuditLogAction.SIGN_UP_FAILED,
                context,
                success=False,
                error_message="Email already exists",
                metadata={"email": email},
            )
            raise EmailAlreadyExistsError()
        try:
            user, _ = await self.users.create_with_profile(
                email=email,
                username=email,
                password=self.crypto.encrypt_password(password),
                first_name=first_name,
                last_name=last_name,
                profile=profile,
            )
        except AlreadyExistEntityError as exc:
            self.audit.create_log(
                AuditLogAction.SIGN_UP_FAILED,
                context,
                success=False,
                error_message="Email already exists",
                metadata={"email": email},
            )
            raise EmailAlreadyExistsError() from exc
        self.codes.consume_code(email, CodeType.SIGNUP)
        pair = await self.tokens.issue_token_pair(user)
        self.audit.create_log(
            AuditLogAction.SIGN_UP_SUCCESS,
            context,
            user=user,
            success=True,
            metadata={"email": email},
        )
        self.notifications.notify_registration(user)
        self.logger.info("sign_up_completed", user_id=user.id)
        return pair

    # sign-in
    async def _authenticate(
        self,
        username: str,
        password: str,
        context: Optional[AuditContext],
        *,
        admin: bool = False,
    ) -> User:
        username = username.strip().lower()
        metadata: Dict[str, Any] = {"username": username}
        if admin:
            metadata["admin"] = True

        def _fail(reason: str, user: Optional[User] = None) -> None:
            self.logger.warning("sign_in_failed", reason=reason, admin=admin)
            self.audit.create_log(
                AuditLogAction.SIGN_IN_FAILED,
                context,
                user=user,
                success=False,
                error_message=reason,
                metadata=metadata,
            )

        user = await self.users.get_by_username(username)
        if user is None:
            _fail("User not found")
            raise UnauthorizedError(INVALID_CREDENTIALS)
        if user.is_deleted:
            _fail("User is deleted", user)
            raise EntityDeletedError("User")
        if not self.crypto.verify_password(password, user.password):
            _fail("Invalid password", user)
            raise UnauthorizedError(INVALID_CREDENTIALS)
        if not user.is_active:
            _fail("User is inactive", user)
            raise ForbiddenError("User is inactive")
        if admin and not user.is_super:
            _fail("User is not an admin", user)
            raise ForbiddenError("User is not an admin")
        return user

    async def _complete_sign_in(
        self, user: User, context: Optional[AuditContext], *, admin: bool = False
    ) -> TokenPair:
        pair = await self.tokens.issue_token_pair(user)
        metadata: Dict[str, Any] = {"username": user.username}
        if admin:
            metadata["admin"] = True
        self.audit.create_log(
            AuditLogAction.SIGN_IN_SUCCESS, context, user=user, success=True, metadata=metadata
        )
        return pair

    async def sign_in(
        self, username: str, password: str, context: Optional[AuditContext] = None
    ) -> TokenPair:
        user = await self._authenticate(username, password, context)
        return await self._complete_sign_in(user, context)

    async def admin_sign_in(
        self, username: str, password: str, context: Optional[AuditContext] = None
    ) -> TokenPair:
        user = await self._authenticate(username, password, context, admin=True)
        return await self._complete_sign_in(user, context, admin=True)

    async def sign_out(self, user_id: int, context: Optional[AuditContext] = None) -> None:
        revoked = self.tokens.sign_out(user_id)
        self.audit.create_log(
            AuditLogAction.SIGN_OUT,
            context,
            user_id=user_id,
            success=True,
            metadata={"revoked_tokens": revoked},
        )

    async def new_access_token(
        self, refresh_token: str, context: Optional[AuditContext] = None
    ) -> TokenPair:
        try:
            access_token, stored = await self.tokens.refresh(refresh_token)
        except UnauthorizedError as exc:
            self.audit.create_log(
                AuditLogAction.NEW_ACCESS_TOKEN,
                context,
                success=False,
                error_message=exc.message,
            )
            raise
        self.audit.create_log(
            AuditLogAction.NEW_ACCESS_TOKEN, context, user_id=stored.user_id, success=True
        )
        return TokenPair(access_token=access_token, refresh_token=stored.token)

    def resolve_access_token(self, access_token: Optional[str]) -> Dict[str, Any]:
        """Claims of a valid access token; raises UnauthorizedError otherwise."""
        claims = self.tokens.decode_access_token(access_token) if access_token else None
        if not claims:
            raise UnauthorizedError("Invalid access token")
        return claims

    # recovery
    async def recovery_init(self, username: str, context: Optional[AuditContext] = None) -> None:
        """Send a recovery code; unknown usernames get the same silent response."""
        username = username.strip().lower()
        user = await self.users.get_by_username(username)
        if user is None:
            self.logger.info("recovery_init_unknown_user")
            self.audit.create_log(
                AuditLogAction.RECOVERY_INIT,
                context,
                success=False,
                error_message="User not found",
                metadata={"username": username},
            )
            return
        code = self.codes.generate_code(user.email, CodeType.RECOVERY)
        self.notifications.send_code(user.email, code)
        self.audit.create_log(
            AuditLogAction.RECOVERY_INIT,
            context,
            user=user,
            success=True,
            metadata={"username": username},
        )

    async def recovery_confirm(
        self,
        *,
        username: str,
        code: str,
        password: str,
        context: Optional[AuditContext] = None,
    ) -> None:
        username = username.strip().lower()
        user = await self.users.get_by_username(username)
        if user is None:
            self.audit.create_log(
                AuditLogAction.RECOVERY_CONFIRM_FAILED,
                context,
                success=False,
                error_message="User not found",
                metadata={"username": username},
            )
            raise InvalidCodeError()
        if not self.codes.verify_code(user.email, code, CodeType.RECOVERY):
            self.audit.create_log(
                AuditLogAction.RECOVERY_CONFIRM_FAILED,
                context,
                user=user,
                success=False,
                error_message="Code expired or invalid",
                metadata={"username": username},
            )
            raise InvalidCodeError()
        updated = await self.users.update(
            user.id, {"password": self.crypto.encrypt_password(password)}
        )
        self.codes.consume_code(user.email, CodeType.RECOVERY)
        self.tokens.sign_out(user.id)
        self.audit.create_log(
            AuditLogAction.RECOVERY_CONFIRM_SUCCESS,
            context,
            user=updated,
            success=True,
            metadata={"username": username},
        )
        self.notifications.notify_password_changed(updated)

    # federated login
    async def oauth_login(
        self, payload: OAuthPayload, context: Optional[AuditContext] = None
    ) -> TokenPair:
        return await self.oauth.login(payload, context or AuditContext())

    # own profile
    async def get_own_profile(self, user_id: int) -> Dict[str, Any]:
        user = await self.users.find_one(user_id)
        profile = self.store.get_profile(user_id)
        if profile is None:
            raise NotFoundEntityError("Profile")
        return {"user": user, "profile": profile}

    async def update_own_profile(self, user_id: int, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a partial profile update; first and last name land on the user row."""
        unknown = set(patch) - PROFILE_FIELDS - OWN_NAME_FIELDS
        if unknown:
            raise ValidationError(
                "Unsupported profile fields", detail={"fields": sorted(unknown)}
            )
        user = await self.users.find_one(user_id)
        names = {k: v for k, v in patch.items() if k in OWN_NAME_FIELDS}
        if names:
            user = await self.users.update(user_id, names)
        profile = self.store.update_profile(
            user_id, {k: v for k, v in patch.items() if k in PROFILE_FIELDS}
        )
        if profile is None:
            raise NotFoundEntityError("Profile")
        self.logger.info("profile_updated", user_id=user_id, fields=sorted(patch))
        return {"user": user, "profile": profile}

    # administration
    def list_users(self, *, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        users, total = self.users.find_all(page=page, limit=limit)
        return {"data": users, "total": total, "page": max(page, 1), "limit": limit}

    async def get_user(self, user_id: int) -> User:
        return await self.users.find_one(user_id)

    async def get_profile(self, user_id: int) -> Profile:
        await self.users.find_one(user_id)
        profile = self.store.get_profile(user_id)
        if profile is None:
            raise NotFoundEntityError("Profile")
        return profile

    async def update_user(self, user_id: int, patch: Dict[str, Any]) -> User:
        unknown = set(patch) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValidationError(
                "Unsupported user fields", detail={"fields": sorted(unknown)}
            )
        changes = dict(patch)
        if changes.get("password"):
            changes["password"] = self.crypto.encrypt_password(changes["password"])
        elif "password" in changes:
            raise ValidationError("Password must not be empty")
        user = await self.users.update(user_id, changes)
        if changes.get("is_active") is False or "password" in changes:
            self.tokens.sign_out(user_id)
        self.logger.info("admin_user_updated", user_id=user_id, fields=sorted(changes))
        return user

    async def set_user_status(self, user_id: int, is_active: bool) -> User:
        user = await self.users.update(user_id, {"is_active": is_active})
        if not is_active:
            self.tokens.sign_out(user_id)
        self.logger.info("admin_user_status_changed", user_id=user_id, is_active=is_active)
        return user

    async def delete_user(self, user_id: int) -> User:
        user = await self.users.delete(user_id)
        self.tokens.sign_out(user_id)
        self.logger.info("admin_user_deleted", user_id=user_id)
        return user

    def get_activity_by_day(self, start: date, end: date) -> list[Dict[str, Any]]:
        return self.audit.get_activity_by_day(start, end)
