from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from constructor_auth.config import Settings
from constructor_auth.logging import get_logger
from constructor_auth.storage.common import CredentialStore
from constructor_auth.storage.models import Code, CodeType

logger = get_logger(__name__)


class CodeService:
    """One-time numeric codes scoped to (username, purpose).

    Generating a code replaces every earlier code for the same pair in one
    store operation, so only the latest one can verify. Verification itself leaves the row in place;
    callers that act on a verified code call :meth:`consume_code` afterwards.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.length = settings.code_length
        self.ttl = timedelta(minutes=settings.code_ttl_minutes)
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    def _random_code(self) -> str:
        return "".join(str(secrets.randbelow(10)) for _ in range(self.length))

    def generate_code(self, username: str, code_type: CodeType) -> Code:
        code_type = CodeType(code_type)
        code = self.store.replace_code(
            username, self._random_code(), code_type, self._now() + self.ttl
        )
        logger.info(
            "code_generated",
            code_type=code_type.value,
            code_id=code.id,
        )
        return code

    def verify_code(self, username: str, code: str, code_type: CodeType) -> bool:
        if not code:
            return False
        record = self.store.get_latest_code(username, code, CodeType(code_type))
        if not record:
            return False
        if record.is_expired(self._now()):
            logger.info("code_expired", code_type=record.type.value, code_id=record.id)
            return False
        return True

    def consume_code(self, username: str, code_type: CodeType) -> None:
        self.store.delete_codes(username, CodeType(code_type))
