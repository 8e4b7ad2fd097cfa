from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from redis.exceptions import RedisError

from constructor_auth.logging import get_logger
from constructor_auth.service.errors import AlreadyExistEntityError, NotFoundEntityError
from constructor_auth.storage.common import CredentialStore, normalize_email
from constructor_auth.storage.errors import ConstraintViolation
from constructor_auth.storage.models import Profile, User
from constructor_auth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class UserRepository:
    """Read-through user lookups over the credential store.

    Every cached user lives under both ``user:id:{id}`` and
    ``user:username:{username}``. Writes go to the store first; the cache is
    then invalidated for the old identity and refilled with the new one.
    Cache failures degrade to store reads and never fail the caller.
    """

    def __init__(self, store: CredentialStore, cache: Optional[RedisCache] = None) -> None:
        self.store = store
        self.cache = cache

    async def _cache_get(self, key: str) -> Optional[User]:
        if not self.cache:
            return None
        try:
            payload = await self.cache.get_json(key)
        except RedisError as exc:
            logger.warning("user_cache_error", op="get", key=key, error=str(exc))
            return None
        if payload is None:
            return None
        try:
            return User.from_cache(payload)
        except (TypeError, ValueError) as exc:
            logger.warning("user_cache_decode_failed", key=key, error=str(exc))
            return None

    async def _cache_set(self, user: User) -> None:
        if not self.cache:
            return
        keys = [RedisCache.user_id_key(user.id), RedisCache.username_key(user.username)]
        try:
            await self.cache.set_json(keys, user.to_cache())
        except RedisError as exc:
            logger.warning("user_cache_error", op="set", user_id=user.id, error=str(exc))

    async def _cache_invalidate(self, user: User) -> None:
        if not self.cache:
            return
        try:
            await self.cache.delete(
                RedisCache.user_id_key(user.id), RedisCache.username_key(user.username)
            )
        except RedisError as exc:
            logger.warning(
                "user_cache_error", op="invalidate", user_id=user.id, error=str(exc)
            )

    async def get(self, user_id: int) -> Optional[User]:
        cached = await self._cache_get(RedisCache.user_id_key(user_id))
        if cached:
            return cached
        user = self.store.get_user(user_id)
        if user:
            await self._cache_set(user)
        return user

    async def get_by_username(self, username: str) -> Optional[User]:
        cached = await self._cache_get(RedisCache.username_key(username))
        if cached:
            return cached
        user = self.store.get_user_by_username(username)
        if user:
            await self._cache_set(user)
        return user

    async def find_one(self, user_id: int) -> User:
        user = await self.get(user_id)
        if not user:
            raise NotFoundEntityError("User")
        return user

    async def find_one_by_username(self, username: str) -> User:
        user = await self.get_by_username(username)
        if not user:
            raise NotFoundEntityError("User")
        return user

    async def find_by_email(self, email: str) -> Optional[User]:
        """Look a live user up by email; self-registered usernames equal the email.

        A cached snapshot of a soft-deleted user is dropped and the store is
        consulted instead, so a freed email can be registered again.
        """
        email = normalize_email(email)
        cached = await self._cache_get(RedisCache.username_key(email))
        if cached and cached.email == email:
            if not cached.is_deleted:
                return cached
            await self._cache_invalidate(cached)
        user = self.store.get_user_by_email(email)
        if user:
            await self._cache_set(user)
        return user

    async def create(self, **fields: Any) -> User:
        try:
            user = self.store.create_user(**fields)
        except ConstraintViolation as exc:
            raise AlreadyExistEntityError("User", detail=exc.detail) from exc
        await self._cache_set(user)
        return user

    async def create_with_profile(
        self, *, profile: Optional[Dict[str, Any]] = None, **fields: Any
    ) -> Tuple[User, Profile]:
        """Create a user and its profile in one store transaction."""
        try:
            user, created = self.store.create_user_with_profile(profile=profile, **fields)
        except ConstraintViolation as exc:
            raise AlreadyExistEntityError("User", detail=exc.detail) from exc
        await self._cache_set(user)
        return user, created

    async def update(self, user_id: int, patch: Dict[str, Any]) -> User:
        before = self.store.get_user(user_id)
        if not before:
            raise NotFoundEntityError("User")
        try:
            after = self.store.update_user(user_id, patch)
        except ConstraintViolation as exc:
            raise AlreadyExistEntityError("User", detail=exc.detail) from exc
        if not after:
            raise NotFoundEntityError("User")
        await self._cache_invalidate(before)
        await self._cache_set(after)
        return after

    async def delete(self, user_id: int) -> User:
        deleted = self.store.soft_delete_user(user_id)
        if not deleted:
            raise NotFoundEntityError("User")
        await self._cache_invalidate(deleted)
        return deleted

    def find_all(self, *, page: int = 1, limit: int = 20) -> Tuple[List[User], int]:
        page = max(page, 1)
        limit = max(1, min(limit, 100))
        return self.store.list_users(offset=(page - 1) * limit, limit=limit)
