from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Set

from constructor_auth.logging import get_logger
from constructor_auth.service.email import EmailService
from constructor_auth.storage.models import Code, User

logger = get_logger(__name__)


class NotificationDispatcher:
    """Fire-and-forget delivery of account emails.

    Each notification runs as its own asyncio task with the blocking SMTP
    work pushed to a thread. Callers never await delivery; failures end in a
    ``notification_failed`` log line and nowhere else.
    """

    def __init__(self, email: EmailService) -> None:
        self.email = email
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(self, kind: str, send: Callable[..., bool], *args: Any) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("notification_failed", kind=kind, error="no running event loop")
            return None
        task = loop.create_task(self._run(kind, send, *args))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _run(self, kind: str, send: Callable[..., bool], *args: Any) -> None:
        try:
            delivered = await asyncio.to_thread(send, *args)
        except Exception as exc:
            logger.error(
                "notification_failed",
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            logger.error("notification_failed", kind=kind, error="delivery rejected")
            return
        logger.info("notification_sent", kind=kind)

    def send_code(self, email: str, code: Code) -> Optional[asyncio.Task]:
        return self.dispatch(
            f"code_{code.type.value}",
            self.email.send_code,
            email,
            code.code,
            code.type,
            code.expiration_date,
        )

    def notify_registration(self, user: User) -> Optional[asyncio.Task]:
        return self.dispatch("welcome", self.email.send_welcome, user.email, user.first_name)

    def notify_password_changed(self, user: User) -> Optional[asyncio.Task]:
        return self.dispatch(
            "password_changed", self.email.send_password_changed, user.email, user.first_name
        )

    async def drain(self) -> None:
        """Wait for every in-flight notification; used at shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
