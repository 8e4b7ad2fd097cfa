"""OAuth strategy registry and Google ID-token login, with httpx mocked by respx."""

import re

import fakeredis.aioredis
import httpx
import pytest
import respx

from constructor_auth.config import Settings
from constructor_auth.service.errors import EntityDeletedError, ForbiddenError, UnauthorizedError
from constructor_auth.service.oauth import GoogleStrategy, OAuthStrategy, OAuthStrategyRegistry
from constructor_auth.storage.models import (
    AuditContext,
    AuditLogAction,
    OAuthIdentity,
    OAuthPayload,
    OAuthType,
)
from constructor_auth.storage.redis_cache import RedisCache

TOKENINFO = re.compile(r"^https://oauth2\.googleapis\.com/tokeninfo(?:\?.*)?$")
CLIENT_ID = "test-client-id.apps.googleusercontent.com"


def _claims(email="gina@example.com", **overrides):
    claims = {
        "aud": CLIENT_ID,
        "iss": "https://accounts.google.com",
        "sub": "1234567890",
        "email": email,
        "email_verified": "true",
        "given_name": "Gina",
        "family_name": "Google",
        "picture": "https://example.com/gina.png",
    }
    claims.update(overrides)
    return claims


def _mock_tokeninfo(router, tokens):
    """Answer tokeninfo lookups from a ``{id_token: claims}`` table; unknown tokens get 400."""

    def _respond(request):
        claims = tokens.get(request.url.params.get("id_token"))
        if claims is None:
            return httpx.Response(400, json={"error": "invalid_token"})
        return httpx.Response(200, json=claims)

    return router.get(TOKENINFO).mock(side_effect=_respond)


def _actions(store):
    return [entry.action for entry in store.audit_logs]


class TestRegistry:
    """Strategy lookup by provider type."""

    def test_unknown_type_is_forbidden(self, make_stack):
        stack = make_stack()

        with pytest.raises(ForbiddenError) as exc_info:
            stack.registry.get_strategy("facebook")
        assert "facebook" in exc_info.value.message

    def test_registered_types(self, make_stack):
        stack = make_stack()

        assert stack.registry.types == ["google"]
        assert stack.registry.get_strategy("google") is stack.google

    async def test_unsupported_type_via_service(self, make_stack):
        stack = make_stack()

        with pytest.raises(ForbiddenError):
            await stack.auth.oauth_login(OAuthPayload(type="apple", token="t"))


class TestGoogleLogin:
    """First login provisions the user; later logins only sign in."""

    async def test_first_then_second_login(self, make_stack):
        stack = make_stack()
        context = AuditContext(ip_address="1.2.3.4")
        with respx.mock(assert_all_called=False) as router:
            route = _mock_tokeninfo(router, {"id-token-1": _claims()})

            first = await stack.auth.oauth_login(OAuthPayload(type="google", token="id-token-1"), context)
            assert _actions(stack.store) == [
                AuditLogAction.OAUTH_REGISTRATION_SUCCESS,
                AuditLogAction.OAUTH_LOGIN_SUCCESS,
            ]

            second = await stack.auth.oauth_login(OAuthPayload(type="google", token="id-token-1"), context)

        assert route.call_count == 2
        assert _actions(stack.store) == [
            AuditLogAction.OAUTH_REGISTRATION_SUCCESS,
            AuditLogAction.OAUTH_LOGIN_SUCCESS,
            AuditLogAction.OAUTH_LOGIN_SUCCESS,
        ]
        assert first.refresh_token != second.refresh_token
        user = stack.store.get_user_by_email("gina@example.com")
        assert user.username == "gina@example.com"
        assert user.first_name == "Gina"
        assert stack.store.get_profile(user.id).photo == "https://example.com/gina.png"
        last = stack.store.audit_logs[-1]
        assert last.user_id == user.id
        assert last.metadata == {"type": "google", "registered": False}
        await stack.notifications.drain()

    async def test_existing_password_user_is_logged_in(self, make_stack):
        stack = make_stack()
        existing = await stack.users.create(
            email="gina@example.com", username="gina@example.com", password="digest"
        )
        with respx.mock(assert_all_called=False) as router:
            _mock_tokeninfo(router, {"tok": _claims()})
            pair = await stack.auth.oauth_login(OAuthPayload(type="google", token="tok"))

        claims = stack.tokens.decode_access_token(pair.access_token)
        assert claims["sub"] == str(existing.id)
        assert _actions(stack.store) == [AuditLogAction.OAUTH_LOGIN_SUCCESS]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"aud": "someone-else"},
            {"iss": "https://evil.example.com"},
            {"email": ""},
            {"email_verified": "false"},
        ],
    )
    async def test_untrusted_claims_are_rejected(self, make_stack, overrides):
        stack = make_stack()
        with respx.mock(assert_all_called=False) as router:
            _mock_tokeninfo(router, {"tok": _claims(**overrides)})
            with pytest.raises(UnauthorizedError):
                await stack.auth.oauth_login(OAuthPayload(type="google", token="tok"))

        assert _actions(stack.store) == [AuditLogAction.OAUTH_LOGIN_FAILED]
        assert stack.store.users == {}

    async def test_rejected_token_is_audited(self, make_stack):
        stack = make_stack()
        with respx.mock(assert_all_called=False) as router:
            _mock_tokeninfo(router, {})
            with pytest.raises(UnauthorizedError):
                await stack.auth.oauth_login(OAuthPayload(type="google", token="bogus"))

        entry = stack.store.audit_logs[-1]
        assert entry.action == AuditLogAction.OAUTH_LOGIN_FAILED
        assert "400" in entry.error_message

    async def test_missing_token(self, make_stack):
        stack = make_stack()

        with pytest.raises(UnauthorizedError):
            await stack.auth.oauth_login(OAuthPayload(type="google"))

    async def test_client_id_required(self, make_stack):
        stack = make_stack()
        unconfigured = Settings(test_mode=True, jwt_secret="j", encryption_secret="e")
        strategy = GoogleStrategy(
            stack.users,
            stack.tokens,
            stack.audit,
            stack.notifications,
            crypto=stack.crypto,
            settings=unconfigured,
        )

        with pytest.raises(UnauthorizedError):
            await strategy.execute(OAuthPayload(type="google", token="tok"), AuditContext())

    async def test_inactive_user_is_forbidden(self, make_stack):
        stack = make_stack()
        user = await stack.users.create(
            email="gina@example.com", username="gina@example.com", password="digest"
        )
        await stack.users.update(user.id, {"is_active": False})
        with respx.mock(assert_all_called=False) as router:
            _mock_tokeninfo(router, {"tok": _claims()})
            with pytest.raises(ForbiddenError):
                await stack.auth.oauth_login(OAuthPayload(type="google", token="tok"))

        assert stack.store.tokens == {}

    async def test_deleted_user_snapshot_in_cache_gets_no_tokens(self, make_stack):
        cache = RedisCache.from_client(fakeredis.aioredis.FakeRedis(decode_responses=True))
        stack = make_stack(cache=cache)
        user = await stack.users.create(
            email="gina@example.com", username="gina@example.com", password="digest"
        )
        # Soft delete behind the repository so the cached snapshot goes stale
        stale = user.to_cache()
        stack.store.soft_delete_user(user.id)
        stale["deleted_at"] = stack.store.users[user.id].deleted_at.isoformat()
        await cache.set_json([RedisCache.username_key(user.username)], stale)

        with respx.mock(assert_all_called=False) as router:
            _mock_tokeninfo(router, {"tok": _claims()})
            pair = await stack.auth.oauth_login(OAuthPayload(type="google", token="tok"))

        claims = stack.tokens.decode_access_token(pair.access_token)
        assert claims["sub"] != str(user.id)
        assert all(token.user_id != user.id for token in stack.store.tokens.values())
        assert _actions(stack.store)[0] == AuditLogAction.OAUTH_REGISTRATION_SUCCESS
        await stack.notifications.drain()

    async def test_deleted_user_is_refused_and_audited(self, make_stack, monkeypatch):
        stack = make_stack()
        user = await stack.users.create(
            email="gina@example.com", username="gina@example.com", password="digest"
        )
        deleted = stack.store.soft_delete_user(user.id)

        async def _find_deleted(email):
            return deleted

        monkeypatch.setattr(stack.users, "find_by_email", _find_deleted)
        with respx.mock(assert_all_called=False) as router:
            _mock_tokeninfo(router, {"tok": _claims()})
            with pytest.raises(EntityDeletedError):
                await stack.auth.oauth_login(OAuthPayload(type="google", token="tok"))

        assert stack.store.tokens == {}
        entry = stack.store.audit_logs[-1]
        assert entry.action == AuditLogAction.OAUTH_LOGIN_FAILED
        assert entry.error_message == "User is deleted"
        assert entry.user_id == user.id

    async def test_registration_creates_user_and_profile_together(self, make_stack, monkeypatch):
        stack = make_stack()

        def _broken_profile(user_id, **fields):
            raise RuntimeError("profile insert failed")

        monkeypatch.setattr(stack.store, "create_profile", _broken_profile)
        with respx.mock(assert_all_called=False) as router:
            _mock_tokeninfo(router, {"tok": _claims()})
            with pytest.raises(UnauthorizedError):
                await stack.auth.oauth_login(OAuthPayload(type="google", token="tok"))

        assert stack.store.get_user_by_email("gina@example.com") is None
        assert _actions(stack.store) == [AuditLogAction.OAUTH_REGISTRATION_FAILED]


class _LoginOnlyStrategy(OAuthStrategy):
    provider_type = OAuthType.GOOGLE

    async def verify(self, payload):
        return OAuthIdentity(email="newcomer@example.com")


class TestRegistrationDisabled:
    """Strategies that do not override registration refuse unknown users."""

    async def test_unknown_user_is_forbidden_and_audited(self, make_stack):
        stack = make_stack()
        strategy = _LoginOnlyStrategy(stack.users, stack.tokens, stack.audit, stack.notifications)
        registry = OAuthStrategyRegistry([strategy])

        with pytest.raises(ForbiddenError) as exc_info:
            await registry.get_strategy("google").execute(
                OAuthPayload(type="google", token="tok"), AuditContext()
            )

        assert "not supported" in exc_info.value.message
        assert _actions(stack.store) == [AuditLogAction.OAUTH_REGISTRATION_FAILED]
