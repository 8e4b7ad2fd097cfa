from __future__ import annotations

import hashlib
import hmac
import secrets

from constructor_auth.config import Settings


class CryptoService:
    """Keyed password digests.

    Digests are HMAC-SHA256 over the plaintext with ENCRYPTION_SECRET, so the
    same password always yields the same hex string for a given secret.
    """

    def __init__(self, settings: Settings) -> None:
        self._key = settings.encryption_secret.encode()

    def encrypt_password(self, password: str) -> str:
        return hmac.new(self._key, password.encode(), hashlib.sha256).hexdigest()

    def verify_password(self, password: str, digest: str) -> bool:
        if not isinstance(password, str) or not isinstance(digest, str):
            return False
        return hmac.compare_digest(self.encrypt_password(password), digest)

    @staticmethod
    def generate_password(length: int = 24) -> str:
        """Random password for accounts provisioned through an external provider."""
        return secrets.token_urlsafe(length)
