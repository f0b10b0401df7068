"""Unit tests for auth service.

Tests for:
- Registration and profile updates
- Login, throttling and rehash-on-login
- Token refresh and logout
- Token authentication and session resolution
"""

import pytest
from pydantic import SecretStr

from conftest import VALID_PASSWORD
from todo_api.service.auth import AuthService
from todo_api.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    TokenInvalidError,
    ValidationError,
)
from todo_api.service.password import HashParams, hash_password
from todo_api.storage.models import TokenKind


class TestRegistration:
    def test_register_creates_user_with_hashed_password(self, auth_service, memory_store):
        user = auth_service.register_user(" Doe ", "Jane", "E@X.com", VALID_PASSWORD)

        assert user.family_name == "Doe"
        assert user.email == "e@x.com"
        assert user.is_active is True
        stored = memory_store.get_password_hash(user.id)
        assert stored.startswith("$argon2id$")
        assert VALID_PASSWORD not in stored

    def test_register_rejects_weak_password(self, auth_service, memory_store):
        with pytest.raises(ValidationError) as exc_info:
            auth_service.register_user("Doe", "Jane", "e@x.com", "short1!")

        assert "too_short" in exc_info.value.detail["failures"]
        assert memory_store.users == {}

    def test_register_rejects_unencodable_password(self, auth_service, memory_store):
        with pytest.raises(ValidationError) as exc_info:
            auth_service.register_user("Doe", "Jane", "e@x.com", VALID_PASSWORD + "\udc80")

        assert "invalid_characters" in exc_info.value.detail["failures"]
        assert memory_store.get_user_by_email("e@x.com") is None

    def test_register_rejects_bad_email(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.register_user("Doe", "Jane", "not-an-email", VALID_PASSWORD)

    def test_register_rejects_duplicate_email(self, auth_service, registered_user):
        with pytest.raises(ConflictError):
            auth_service.register_user("Roe", "John", "E@x.com", VALID_PASSWORD)


class TestProfile:
    def test_update_profile(self, auth_service, registered_user):
        updated = auth_service.update_profile(
            registered_user.id, given_name=" Janet ", email="janet@x.com"
        )

        assert updated.given_name == "Janet"
        assert updated.email == "janet@x.com"
        assert updated.family_name == "Doe"

    def test_update_profile_conflicting_email(self, auth_service, registered_user):
        other = auth_service.register_user("Roe", "John", "john@x.com", VALID_PASSWORD)

        with pytest.raises(ConflictError):
            auth_service.update_profile(other.id, email="e@x.com")

    def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            auth_service.get_user("missing")
        with pytest.raises(NotFoundError):
            auth_service.update_profile("missing", given_name="X")


class TestLogin:
    async def test_login_returns_pair_resolving_to_user(self, auth_service, registered_user):
        user, pair = await auth_service.login("e@x.com", VALID_PASSWORD)

        assert user.id == registered_user.id
        assert user.last_login_at is not None
        assert await auth_service.authenticate(pair.access_token, TokenKind.ACCESS) == user.id

    async def test_access_token_is_not_a_refresh_token(self, auth_service, registered_user):
        _, pair = await auth_service.login("e@x.com", VALID_PASSWORD)

        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(pair.access_token, TokenKind.REFRESH)
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(pair.refresh_token, TokenKind.ACCESS)

    async def test_email_lookup_is_case_insensitive(self, auth_service, registered_user):
        user, _ = await auth_service.login("  E@X.COM ", VALID_PASSWORD)

        assert user.id == registered_user.id

    async def test_wrong_password_and_unknown_email_look_alike(
        self, auth_service, registered_user
    ):
        with pytest.raises(InvalidCredentialsError) as wrong_password:
            await auth_service.login("e@x.com", "Wrong1@Pass")
        with pytest.raises(InvalidCredentialsError) as unknown_email:
            await auth_service.login("nobody@x.com", VALID_PASSWORD)

        assert wrong_password.value.message == unknown_email.value.message
        assert wrong_password.value.status_code == unknown_email.value.status_code == 401

    async def test_login_does_not_apply_strength_rules(self, auth_service, memory_store):
        codec = auth_service.codec
        user = memory_store.create_user("Doe", "Old", "old@x.com", codec.hash("weak"))

        logged_in, _ = await auth_service.login("old@x.com", "weak")

        assert logged_in.id == user.id

    async def test_unencodable_password_is_a_failed_login(self, auth_service, registered_user):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("e@x.com", VALID_PASSWORD + "\udc80")
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("nobody@x.com", VALID_PASSWORD + "\udc80")

    async def test_inactive_user_cannot_login(self, auth_service, memory_store, registered_user):
        memory_store.update_user(registered_user.id, is_active=False)

        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("e@x.com", VALID_PASSWORD)

    async def test_lockout_after_max_attempts(self, auth_service, registered_user, settings):
        # max_attempts is 3 in the test settings
        for _ in range(settings.login_max_attempts - 1):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("e@x.com", "Wrong1@Pass")
        # still usable after N-1 failures
        await auth_service.login("e@x.com", VALID_PASSWORD)

        for _ in range(settings.login_max_attempts):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("e@x.com", "Wrong1@Pass")

        with pytest.raises(AccountLockedError) as exc_info:
            await auth_service.login("e@x.com", VALID_PASSWORD)
        # outwardly identical to a wrong password
        assert isinstance(exc_info.value, InvalidCredentialsError)
        assert exc_info.value.message == InvalidCredentialsError().message

    async def test_success_resets_failure_counter(self, auth_service, memory_store, registered_user):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("e@x.com", "Wrong1@Pass")
        assert memory_store.get_login_failure(registered_user.id) is not None

        await auth_service.login("e@x.com", VALID_PASSWORD)

        assert memory_store.get_login_failure(registered_user.id) is None

    async def test_login_rehashes_outdated_hash(self, auth_service, memory_store, settings):
        pepper = settings.password_pepper.get_secret_value()
        old_hash = hash_password(
            VALID_PASSWORD, pepper, HashParams(memory=16, iterations=2, parallelism=1)
        )
        user = memory_store.create_user("Doe", "Jane", "e@x.com", old_hash)

        await auth_service.login("e@x.com", VALID_PASSWORD)

        new_hash = memory_store.get_password_hash(user.id)
        assert new_hash != old_hash
        assert "m=8,t=1,p=1" in new_hash
        assert auth_service.codec.verify(VALID_PASSWORD, new_hash)


class TestRefreshAndLogout:
    async def test_refresh_issues_new_pair(self, auth_service, registered_user):
        _, pair = await auth_service.login("e@x.com", VALID_PASSWORD)

        user, rotated = await auth_service.refresh(pair.refresh_token)

        assert user.id == registered_user.id
        assert rotated.access_token != pair.access_token
        assert await auth_service.authenticate(rotated.access_token, TokenKind.ACCESS) == user.id
        # rotation does not revoke the presented refresh token
        assert await auth_service.authenticate(pair.refresh_token, TokenKind.REFRESH) == user.id

    async def test_refresh_rejects_access_token(self, auth_service, registered_user):
        _, pair = await auth_service.login("e@x.com", VALID_PASSWORD)

        with pytest.raises(TokenInvalidError):
            await auth_service.refresh(pair.access_token)

    async def test_refresh_rejects_non_ascii_token(self, auth_service, registered_user):
        _, pair = await auth_service.login("e@x.com", VALID_PASSWORD)
        header, payload, _ = pair.refresh_token.split(".")

        with pytest.raises(TokenInvalidError):
            await auth_service.refresh(f"{header}.{payload}.\udc80")

    async def test_refresh_rejects_inactive_user(self, auth_service, memory_store, registered_user):
        _, pair = await auth_service.login("e@x.com", VALID_PASSWORD)
        memory_store.update_user(registered_user.id, is_active=False)

        with pytest.raises(TokenInvalidError):
            await auth_service.refresh(pair.refresh_token)

    async def test_logout_is_idempotent_and_revokes_everything(
        self, auth_service, registered_user
    ):
        _, first = await auth_service.login("e@x.com", VALID_PASSWORD)
        _, second = await auth_service.login("e@x.com", VALID_PASSWORD)

        assert await auth_service.logout(registered_user.id) == 4
        assert await auth_service.logout(registered_user.id) == 0

        for token, kind in (
            (first.access_token, TokenKind.ACCESS),
            (first.refresh_token, TokenKind.REFRESH),
            (second.access_token, TokenKind.ACCESS),
        ):
            with pytest.raises(AuthenticationError):
                await auth_service.authenticate(token, kind)
        with pytest.raises(TokenInvalidError):
            await auth_service.refresh(second.refresh_token)

    async def test_change_password_revokes_tokens(self, auth_service, registered_user):
        _, pair = await auth_service.login("e@x.com", VALID_PASSWORD)

        revoked = await auth_service.change_password(
            registered_user.id, VALID_PASSWORD, "Newer2#Pass"
        )

        assert revoked == 2
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(pair.access_token, TokenKind.ACCESS)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("e@x.com", VALID_PASSWORD)
        await auth_service.login("e@x.com", "Newer2#Pass")

    async def test_change_password_checks_current_and_policy(self, auth_service, registered_user):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(registered_user.id, "Wrong1@Pass", "Newer2#Pass")
        with pytest.raises(ValidationError):
            await auth_service.change_password(registered_user.id, VALID_PASSWORD, "weak")


class TestResolveUser:
    async def test_resolves_active_user(self, auth_service, registered_user):
        _, pair = await auth_service.login("e@x.com", VALID_PASSWORD)

        user = await auth_service.resolve_user(pair.access_token)

        assert user.id == registered_user.id

    async def test_missing_token_is_unauthorized(self, auth_service):
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.resolve_user(None)

        assert exc_info.value.message == "unauthorized"

    async def test_deactivated_after_issue_is_rejected(
        self, auth_service, memory_store, registered_user
    ):
        _, pair = await auth_service.login("e@x.com", VALID_PASSWORD)
        memory_store.update_user(registered_user.id, is_active=False)

        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.resolve_user(pair.access_token)
        assert exc_info.value.message == "unauthorized"

    async def test_locked_after_issue_is_rejected(self, auth_service, registered_user, settings):
        _, pair = await auth_service.login("e@x.com", VALID_PASSWORD)
        for _ in range(settings.login_max_attempts):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("e@x.com", "Wrong1@Pass")

        with pytest.raises(AuthenticationError):
            await auth_service.resolve_user(pair.access_token)

    async def test_refresh_token_does_not_open_a_session(self, auth_service, registered_user):
        _, pair = await auth_service.login("e@x.com", VALID_PASSWORD)

        with pytest.raises(AuthenticationError):
            await auth_service.resolve_user(pair.refresh_token)

    async def test_token_from_other_service_secret_is_rejected(
        self, memory_store, token_cache, settings, registered_user, auth_service
    ):
        _, pair = await auth_service.login("e@x.com", VALID_PASSWORD)
        other = AuthService(
            memory_store,
            token_cache,
            settings.model_copy(update={"jwt_secret": SecretStr("some-other-secret")}),
        )

        with pytest.raises(AuthenticationError):
            await other.resolve_user(pair.access_token)
