from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CodeType(str, Enum):
    """Purpose a one-time code was issued for."""

    SIGNUP = "signup"
    RECOVERY = "recovery"


class AuditLogAction(str, Enum):
    """Security-relevant events recorded in the audit log."""

    SIGN_UP_INIT = "sign_up_init"
    SIGN_UP_SUCCESS = "sign_up_success"
    SIGN_UP_FAILED = "sign_up_failed"
    SIGN_IN_SUCCESS = "sign_in_success"
    SIGN_IN_FAILED = "sign_in_failed"
    SIGN_OUT = "sign_out"
    RECOVERY_INIT = "recovery_init"
    RECOVERY_CONFIRM_SUCCESS = "recovery_confirm_success"
    RECOVERY_CONFIRM_FAILED = "recovery_confirm_failed"
    NEW_ACCESS_TOKEN = "new_access_token"
    OAUTH_LOGIN_SUCCESS = "oauth_login_success"
    OAUTH_LOGIN_FAILED = "oauth_login_failed"
    OAUTH_REGISTRATION_SUCCESS = "oauth_registration_success"
    OAUTH_REGISTRATION_FAILED = "oauth_registration_failed"


REGISTRATION_ACTIONS = frozenset(
    {AuditLogAction.SIGN_UP_SUCCESS, AuditLogAction.OAUTH_REGISTRATION_SUCCESS}
)
LOGIN_ACTIONS = frozenset(
    {AuditLogAction.SIGN_IN_SUCCESS, AuditLogAction.OAUTH_LOGIN_SUCCESS}
)


class OAuthType(str, Enum):
    GOOGLE = "google"


@dataclass
class User:
    id: int
    email: str
    username: str
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    is_super: bool = False
    roles: List[str] = field(default_factory=lambda: ["user"])
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_cache(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in ("created_at", "updated_at", "deleted_at"):
            if payload[key] is not None:
                payload[key] = payload[key].isoformat()
        return payload

    @classmethod
    def from_cache(cls, payload: Dict[str, Any]) -> "User":
        data = dict(payload)
        for key in ("created_at", "updated_at", "deleted_at"):
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


# Columns an update patch may touch; id and timestamps are managed by the store
USER_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "username",
        "password",
        "first_name",
        "last_name",
        "is_active",
        "is_super",
        "roles",
    }
)


@dataclass
class Profile:
    id: int
    user_id: int
    birth_date: Optional[date] = None
    bio: Optional[str] = None
    photo: Optional[str] = None
    gender: Optional[str] = None
    height: Optional[float] = None
    weight: Optional[float] = None
    sport_activity: Optional[str] = None
    cheat_meal_day: Optional[str] = None
    period_of_days: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


PROFILE_FIELDS = frozenset(
    {
        "birth_date",
        "bio",
        "photo",
        "gender",
        "height",
        "weight",
        "sport_activity",
        "cheat_meal_day",
        "period_of_days",
    }
)


@dataclass
class Code:
    id: int
    username: str
    code: str
    type: CodeType
    expiration_date: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expiration_date


@dataclass
class Token:
    """Persisted refresh token."""

    id: str
    user_id: int
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: int, token: str, expires_at: datetime) -> "Token":
        return cls(id=str(uuid.uuid4()), user_id=user_id, token=token, expires_at=expires_at)


@dataclass
class AuditLog:
    id: int
    action: AuditLogAction
    success: bool
    user_id: Optional[int] = None
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    device_info: str = "unknown"
    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AuditContext:
    """Request-side facts recorded with every audit entry."""

    ip_address: str = "unknown"
    user_agent: str = "unknown"
    device_info: str = "unknown"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class OAuthPayload:
    type: str
    token: Optional[str] = None


@dataclass(frozen=True)
class OAuthIdentity:
    """Claims extracted from a verified provider token."""

    email: str
    subject: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    picture: Optional[str] = None
