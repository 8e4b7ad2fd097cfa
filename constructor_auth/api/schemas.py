from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from constructor_auth.storage.models import Profile, TokenPair, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "invalid_code",
    "conflict",
    "email_already_exists",
    "entity_deleted",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width characters that could spoof an address."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _normalize_username(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if not normalized:
        raise ValueError("username must not be empty")
    return normalized


class SignUpInitRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_sign_up_email(cls, value: str) -> str:
        return _validate_email(value)


class ProfileFields(BaseModel):
    """Optional body-profile attributes shared by sign-up and profile updates."""

    birth_date: Optional[date] = None
    bio: Optional[str] = Field(default=None, max_length=1000)
    photo: Optional[str] = Field(default=None, max_length=2048)
    gender: Optional[Literal["male", "female", "other"]] = None
    height: Optional[float] = Field(default=None, ge=50, le=300)
    weight: Optional[float] = Field(default=None, ge=20, le=500)
    sport_activity: Optional[str] = Field(default=None, max_length=100)
    cheat_meal_day: Optional[str] = Field(default=None, max_length=32)
    period_of_days: Optional[int] = Field(default=None, ge=1, le=366)

    def profile_fields(self) -> Dict[str, Any]:
        return {
            name: getattr(self, name)
            for name in ProfileFields.model_fields
            if name in self.model_fields_set
        }


class SignUpRequest(ProfileFields):
    email: str
    password: str
    code: str = Field(..., min_length=4, max_length=10)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_sign_up_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SignInRequest(BaseModel):
    username: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)

    @field_validator("username")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_username(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class RecoveryInitRequest(BaseModel):
    username: str = Field(..., max_length=254)

    @field_validator("username")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_username(value)


class RecoveryConfirmRequest(BaseModel):
    username: str = Field(..., max_length=254)
    code: str = Field(..., max_length=10)
    password: str

    @field_validator("username")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_username(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class OAuthLoginRequest(BaseModel):
    type: str = Field(..., max_length=32)
    token: Optional[str] = Field(default=None, max_length=4096)


class AdminUserPatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: Optional[str] = None
    username: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = None
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    is_active: Optional[bool] = None
    is_super: Optional[bool] = None
    roles: Optional[List[str]] = None

    @field_validator("email")
    @classmethod
    def _validate_patch_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("username")
    @classmethod
    def _normalize(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_username(value) if value is not None else None

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


class ProfileUpdateRequest(ProfileFields):
    model_config = ConfigDict(extra="forbid")

    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class AdminUserStatusRequest(BaseModel):
    is_active: bool


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenPairResponse":
        return cls(access_token=pair.access_token, refresh_token=pair.refresh_token)


class UserResponse(BaseModel):
    id: int
    email: str
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool
    is_super: bool
    roles: List[str]
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            first_name=user.first_name,
            last_name=user.last_name,
            is_active=user.is_active,
            is_super=user.is_super,
            roles=list(user.roles),
            created_at=user.created_at,
            updated_at=user.updated_at,
            deleted_at=user.deleted_at,
        )


class ProfileResponse(BaseModel):
    user_id: int
    birth_date: Optional[str] = None
    bio: Optional[str] = None
    photo: Optional[str] = None
    gender: Optional[str] = None
    height: Optional[float] = None
    weight: Optional[float] = None
    sport_activity: Optional[str] = None
    cheat_meal_day: Optional[str] = None
    period_of_days: Optional[int] = None

    @classmethod
    def from_profile(cls, profile: Profile) -> "ProfileResponse":
        return cls(
            user_id=profile.user_id,
            birth_date=profile.birth_date.isoformat() if profile.birth_date else None,
            bio=profile.bio,
            photo=profile.photo,
            gender=profile.gender,
            height=profile.height,
            weight=profile.weight,
            sport_activity=profile.sport_activity,
            cheat_meal_day=profile.cheat_meal_day,
            period_of_days=profile.period_of_days,
        )


class OwnProfileResponse(BaseModel):
    user: UserResponse
    profile: ProfileResponse

    @classmethod
    def from_result(cls, result: Dict[str, Any]) -> "OwnProfileResponse":
        return cls(
            user=UserResponse.from_user(result["user"]),
            profile=ProfileResponse.from_profile(result["profile"]),
        )


class UserListResponse(BaseModel):
    data: List[UserResponse]
    total: int
    page: int
    limit: int


class ActivityDay(BaseModel):
    date: str
    registrations: int
    logins: int
