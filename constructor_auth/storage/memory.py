from __future__ import annotations

import threading
from collections import Counter
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from constructor_auth.logging import get_logger
from constructor_auth.storage.common import (
    clean_profile_fields,
    clean_user_patch,
    normalize_email,
)
from constructor_auth.storage.errors import ConstraintViolation
from constructor_auth.storage.models import (
    AuditLog,
    AuditLogAction,
    Code,
    CodeType,
    Profile,
    Token,
    User,
    utcnow,
)


class MemoryStore:
    """In-process credential store for tests and single-node development.

    Records are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.profiles: Dict[int, Profile] = {}
        self.codes: Dict[int, Code] = {}
        self.tokens: Dict[str, Token] = {}
        self.audit_logs: List[AuditLog] = []
        self._data_lock = threading.RLock()
        self._sequences: Counter[str] = Counter()

    def _next_id(self, name: str) -> int:
        self._sequences[name] += 1
        return self._sequences[name]

    def _live_users(self) -> Iterable[User]:
        return (u for u in self.users.values() if u.deleted_at is None)

    def _assert_unique(
        self, email: str, username: str, *, exclude_id: Optional[int] = None
    ) -> None:
        for existing in self._live_users():
            if existing.id == exclude_id:
                continue
            if existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})

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
    ) -> User:
        email = normalize_email(email)
        username = username.strip().lower()
        with self._data_lock:
            self._assert_unique(email, username)
            user = User(
                id=self._next_id("user"),
                email=email,
                username=username,
                password=password,
                first_name=first_name,
                last_name=last_name,
                is_active=is_active,
                is_super=is_super,
                roles=list(roles) if roles else ["user"],
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: int, *, include_deleted: bool = False) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or (user.deleted_at is not None and not include_deleted):
                return None
            return replace(user)

    def get_user_by_username(self, username: str) -> Optional[User]:
        username = username.strip().lower()
        with self._data_lock:
            user = next((u for u in self._live_users() if u.username == username), None)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self._live_users() if u.email == email), None)
            return replace(user) if user else None

    def update_user(self, user_id: int, patch: Dict[str, Any]) -> Optional[User]:
        updates = clean_user_patch(patch)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at is not None:
                return None
            self._assert_unique(
                updates.get("email", user.email),
                updates.get("username", user.username),
                exclude_id=user_id,
            )
            updated = replace(user, **updates, updated_at=utcnow())
            self.users[user_id] = updated
            return replace(updated)

    def soft_delete_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at is not None:
                return None
            now = utcnow()
            deleted = replace(user, deleted_at=now, updated_at=now)
            self.users[user_id] = deleted
            return replace(deleted)

    def list_users(self, *, offset: int = 0, limit: int = 20) -> Tuple[List[User], int]:
        with self._data_lock:
            live = sorted(self._live_users(), key=lambda u: u.id, reverse=True)
            page = live[offset : offset + limit]
            return [replace(u) for u in page], len(live)

    # profiles
    def create_profile(self, user_id: int, **fields: Any) -> Profile:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("profile owner missing", {"field": "user_id"})
            if user_id in self.profiles:
                raise ConstraintViolation("profile already exists", {"field": "user_id"})
            profile = Profile(
                id=self._next_id("profile"), user_id=user_id, **clean_profile_fields(fields)
            )
            self.profiles[user_id] = profile
            return replace(profile)

    def create_user_with_profile(
        self, *, profile: Optional[Dict[str, Any]] = None, **user_fields: Any
    ) -> Tuple[User, Profile]:
        """Insert a user and its profile together; neither is kept if either fails."""
        with self._data_lock:
            user = self.create_user(**user_fields)
            try:
                created = self.create_profile(user.id, **(profile or {}))
            except Exception:
                del self.users[user.id]
                raise
            return user, created

    def get_profile(self, user_id: int) -> Optional[Profile]:
        with self._data_lock:
            profile = self.profiles.get(user_id)
            return replace(profile) if profile else None

    def update_profile(self, user_id: int, patch: Dict[str, Any]) -> Optional[Profile]:
        updates = clean_profile_fields(patch)
        with self._data_lock:
            profile = self.profiles.get(user_id)
            if not profile:
                return None
            updated = replace(profile, **updates, updated_at=utcnow())
            self.profiles[user_id] = updated
            return replace(updated)

    # one-time codes
    def create_code(
        self, username: str, code: str, code_type: CodeType, expiration_date: datetime
    ) -> Code:
        with self._data_lock:
            record = Code(
                id=self._next_id("code"),
                username=username,
                code=code,
                type=CodeType(code_type),
                expiration_date=expiration_date,
            )
            self.codes[record.id] = record
            return replace(record)

    def delete_codes(self, username: str, code_type: CodeType) -> int:
        with self._data_lock:
            stale = [
                code_id
                for code_id, record in self.codes.items()
                if record.username == username and record.type == code_type
            ]
            for code_id in stale:
                del self.codes[code_id]
            return len(stale)

    def replace_code(
        self, username: str, code: str, code_type: CodeType, expiration_date: datetime
    ) -> Code:
        with self._data_lock:
            self.delete_codes(username, CodeType(code_type))
            return self.create_code(username, code, code_type, expiration_date)

    def get_latest_code(
        self, username: str, code: str, code_type: CodeType
    ) -> Optional[Code]:
        with self._data_lock:
            matches = [
                record
                for record in self.codes.values()
                if record.username == username
                and record.code == code
                and record.type == code_type
            ]
            if not matches:
                return None
            latest = max(matches, key=lambda r: (r.created_at, r.id))
            return replace(latest)

    # refresh tokens
    def save_token(self, user_id: int, token: str, expires_at: datetime) -> Token:
        record = Token.new(user_id, token, expires_at)
        with self._data_lock:
            self.tokens[record.id] = record
            return replace(record)

    def get_token(self, token: str) -> Optional[Token]:
        with self._data_lock:
            record = next((t for t in self.tokens.values() if t.token == token), None)
            return replace(record) if record else None

    def delete_tokens_for_user(self, user_id: int) -> int:
        with self._data_lock:
            owned = [tid for tid, t in self.tokens.items() if t.user_id == user_id]
            for tid in owned:
                del self.tokens[tid]
            return len(owned)

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
    ) -> AuditLog:
        with self._data_lock:
            entry = AuditLog(
                id=self._next_id("audit_log"),
                action=AuditLogAction(action),
                success=success,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                device_info=device_info,
                error_message=error_message,
                metadata=dict(metadata) if metadata else None,
            )
            self.audit_logs.append(entry)
            return replace(entry)

    def list_audit_logs(
        self,
        *,
        user_id: Optional[int] = None,
        action: Optional[AuditLogAction] = None,
        limit: int = 100,
    ) -> List[AuditLog]:
        with self._data_lock:
            entries = [
                entry
                for entry in reversed(self.audit_logs)
                if (user_id is None or entry.user_id == user_id)
                and (action is None or entry.action == action)
            ]
            return [replace(entry) for entry in entries[:limit]]

    def count_audit_events_by_day(
        self, start: datetime, end: datetime, actions: Iterable[AuditLogAction]
    ) -> List[Tuple[date, str, int]]:
        wanted = {AuditLogAction(a) for a in actions}
        counts: Counter[Tuple[date, str]] = Counter()
        with self._data_lock:
            for entry in self.audit_logs:
                if not entry.success or entry.action not in wanted:
                    continue
                if start <= entry.created_at <= end:
                    day = entry.created_at.astimezone(timezone.utc).date()
                    counts[(day, entry.action.value)] += 1
        return sorted((day, action, count) for (day, action), count in counts.items())
