from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from constructor_auth.logging import get_logger
from constructor_auth.storage.common import CredentialStore
from constructor_auth.storage.models import (
    LOGIN_ACTIONS,
    REGISTRATION_ACTIONS,
    AuditContext,
    AuditLog,
    AuditLogAction,
    User,
)

logger = get_logger(__name__)


class AuditLogService:
    """Append-only security event log.

    Writes are best effort: a failing store is reported to the operational
    log and the triggering auth operation carries on.
    """

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def create_log(
        self,
        action: AuditLogAction,
        context: Optional[AuditContext] = None,
        *,
        user: Optional[User] = None,
        user_id: Optional[int] = None,
        success: bool,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        context = context or AuditContext()
        try:
            return self.store.append_audit_log(
                action,
                success,
                user_id=user.id if user else user_id,
                ip_address=context.ip_address or "unknown",
                user_agent=context.user_agent or "unknown",
                device_info=context.device_info or "unknown",
                error_message=error_message,
                metadata=metadata,
            )
        except Exception as exc:
            logger.error(
                "audit_log_write_failed",
                action=getattr(action, "value", action),
                success=success,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    def list_logs(
        self,
        *,
        user_id: Optional[int] = None,
        action: Optional[AuditLogAction] = None,
        limit: int = 100,
    ) -> List[AuditLog]:
        return self.store.list_audit_logs(user_id=user_id, action=action, limit=limit)

    def get_activity_by_day(self, start: date, end: date) -> List[Dict[str, Any]]:
        """Successful registrations and logins per UTC day, both ends inclusive."""
        if end < start:
            start, end = end, start
        window_start = datetime.combine(start, time.min, tzinfo=timezone.utc)
        window_end = datetime.combine(end, time.max, tzinfo=timezone.utc)
        rows = self.store.count_audit_events_by_day(
            window_start, window_end, REGISTRATION_ACTIONS | LOGIN_ACTIONS
        )
        registrations = {action.value for action in REGISTRATION_ACTIONS}
        days: Dict[date, Dict[str, Any]] = {}
        current = start
        while current <= end:
            days[current] = {"date": current.isoformat(), "registrations": 0, "logins": 0}
            current += timedelta(days=1)
        for day, action, count in rows:
            bucket = days.get(day)
            if bucket is None:
                continue
            bucket["registrations" if action in registrations else "logins"] += count
        return list(days.values())
