"""Storage contract and helpers shared between memory and postgres implementations."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from constructor_auth.storage.models import (
    PROFILE_FIELDS,
    USER_MUTABLE_FIELDS,
    AuditLog,
    AuditLogAction,
    Code,
    CodeType,
    Profile,
    Token,
    User,
)


class CredentialStore(Protocol):
    """Persistence contract consumed by repositories and services.

    Lookups by username or email never return soft-deleted users; lookups by
    id do so only with ``include_deleted=True``.
    """

    # users
    def create_user(
        self,
        *,
        email: str,
        username: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: bool = True,
        is_super: bool = False,
        roles: Optional[List[str]] = None,
    ) -> User: ...

    def get_user(self, user_id: int, *, include_deleted: bool = False) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: int, patch: Dict[str, Any]) -> Optional[User]: ...

    def soft_delete_user(self, user_id: int) -> Optional[User]: ...

    def list_users(self, *, offset: int = 0, limit: int = 20) -> Tuple[List[User], int]: ...

    # profiles
    def create_profile(self, user_id: int, **fields: Any) -> Profile: ...

    def create_user_with_profile(
        self, *, profile: Optional[Dict[str, Any]] = None, **user_fields: Any
    ) -> Tuple[User, Profile]: ...

    def get_profile(self, user_id: int) -> Optional[Profile]: ...

    def update_profile(self, user_id: int, patch: Dict[str, Any]) -> Optional[Profile]: ...

    # one-time codes
    def create_code(
        self, username: str, code: str, code_type: CodeType, expiration_date: datetime
    ) -> Code: ...

    def delete_codes(self, username: str, code_type: CodeType) -> int: ...

    def replace_code(
        self, username: str, code: str, code_type: CodeType, expiration_date: datetime
    ) -> Code: ...

    def get_latest_code(
        self, username: str, code: str, code_type: CodeType
    ) -> Optional[Code]: ...

    # refresh tokens
    def save_token(self, user_id: int, token: str, expires_at: datetime) -> Token: ...

    def get_token(self, token: str) -> Optional[Token]: ...

    def delete_tokens_for_user(self, user_id: int) -> int: ...

    # audit log
    def append_audit_log(
        self,
        action: AuditLogAction,
        success: bool,
        *,
        user_id: Optional[int] = None,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
        device_info: str = "unknown",
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLog: ...

    def list_audit_logs(
        self,
        *,
        user_id: Optional[int] = None,
        action: Optional[AuditLogAction] = None,
        limit: int = 100,
    ) -> List[AuditLog]: ...

    def count_audit_events_by_day(
        self, start: datetime, end: datetime, actions: Iterable[AuditLogAction]
    ) -> List[Tuple[date, str, int]]: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def clean_user_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys the store manages itself and normalize identity columns."""
    cleaned = {key: value for key, value in patch.items() if key in USER_MUTABLE_FIELDS}
    if cleaned.get("email"):
        cleaned["email"] = normalize_email(cleaned["email"])
    if cleaned.get("username"):
        cleaned["username"] = cleaned["username"].strip().lower()
    if "roles" in cleaned and cleaned["roles"] is not None:
        cleaned["roles"] = list(dict.fromkeys(cleaned["roles"]))
    return cleaned


def clean_profile_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in fields.items() if key in PROFILE_FIELDS}


__all__ = [
    "CredentialStore",
    "normalize_email",
    "clean_user_patch",
    "clean_profile_fields",
]
