"""Tests for password hashing and the login service."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import SQLAlchemyError

from dcu_api.core.result import Err, Ok
from dcu_api.services.auth import hash_password, verify_password
from dcu_api.services.token_service import TokenErrorCode

from tests.conftest import TEST_EMAIL, TEST_PASSWORD

IP = "10.0.0.1"
UA = "Mozilla/5.0 (TestBrowser)"


class TestPasswordHashing:
    """Tests for Argon2 password hashing."""

    def test_hash_and_verify(self):
        """Test that a hash verifies its own password only."""
        hashed = hash_password("s3cret-password")

        assert hashed.startswith("$argon2id$")
        assert verify_password("s3cret-password", hashed)
        assert not verify_password("wrong-password", hashed)

    def test_hashes_are_salted(self):
        """Test that hashing the same password twice gives different hashes."""
        assert hash_password("same") != hash_password("same")

    def test_verify_invalid_hash(self):
        """Test that a malformed stored hash never verifies."""
        assert not verify_password("anything", "not-an-argon2-hash")


class TestLogin:
    """Tests for AuthService.login."""

    @pytest.mark.asyncio
    async def test_login_success(self, auth_service, token_service, user):
        """Test that valid credentials issue a token set that validates."""
        result = await auth_service.login(TEST_EMAIL, TEST_PASSWORD, IP, UA)

        assert isinstance(result, Ok)
        tokens = result.value
        assert tokens.email == TEST_EMAIL
        assert tokens.remember_me_token is None
        validated = await token_service.validate_access(tokens.access_token, TEST_EMAIL, IP, UA)
        assert isinstance(validated, Ok)

    @pytest.mark.asyncio
    async def test_login_with_remember_me(self, auth_service, user):
        """Test that remember_me adds a remember-me token."""
        tokens = (await auth_service.login(TEST_EMAIL, TEST_PASSWORD, IP, UA, True)).unwrap()

        assert tokens.remember_me_token is not None

    @pytest.mark.asyncio
    async def test_login_records_last_login(self, auth_service, users, user):
        """Test that a successful login stamps last_login_at."""
        await auth_service.login(TEST_EMAIL, TEST_PASSWORD, IP, UA)

        refreshed = await users.find_user_by_id(user.id)
        assert refreshed.last_login_at is not None

    @pytest.mark.asyncio
    async def test_wrong_password(self, auth_service, user):
        """Test that a wrong password is rejected as invalid credentials."""
        result = await auth_service.login(TEST_EMAIL, "wrong-password", IP, UA)

        assert isinstance(result, Err)
        assert result.error.code is TokenErrorCode.INVALID_CREDENTIALS

    @pytest.mark.asyncio
    async def test_unknown_email_same_failure(self, auth_service, user):
        """Test that an unknown email fails exactly like a wrong password."""
        unknown = await auth_service.login("nobody@example.com", TEST_PASSWORD, IP, UA)
        wrong = await auth_service.login(TEST_EMAIL, "wrong-password", IP, UA)

        assert unknown == wrong

    @pytest.mark.asyncio
    async def test_unverified_account(self, auth_service):
        """Test that an unverified account cannot log in with the right password."""
        await auth_service.create_user("dave@example.com", "dave-password")

        result = await auth_service.login("dave@example.com", "dave-password", IP, UA)

        assert isinstance(result, Err)
        assert result.error.code is TokenErrorCode.ACCOUNT_INACTIVE

    @pytest.mark.asyncio
    async def test_inactive_account(self, auth_service):
        """Test that an inactive account cannot log in."""
        await auth_service.create_user(
            "erin@example.com", "erin-password", is_active=False, is_email_verified=True
        )

        result = await auth_service.login("erin@example.com", "erin-password", IP, UA)

        assert result.error.code is TokenErrorCode.ACCOUNT_INACTIVE

    @pytest.mark.asyncio
    async def test_user_lookup_failure(self, auth_service):
        """Test that a database failure during login is reported as storage unavailable."""
        auth_service.users.find_user_by_email = AsyncMock(side_effect=SQLAlchemyError("down"))

        result = await auth_service.login(TEST_EMAIL, TEST_PASSWORD, IP, UA)

        assert result.error.code is TokenErrorCode.STORAGE_UNAVAILABLE


class TestSessionOperations:
    """Tests for logout and remember-me operations on AuthService."""

    @pytest.mark.asyncio
    async def test_logout(self, auth_service, user):
        """Test that logout revokes the session."""
        tokens = (await auth_service.login(TEST_EMAIL, TEST_PASSWORD, IP, UA)).unwrap()

        result = await auth_service.logout(tokens.access_token, tokens.refresh_token)

        assert result == Ok("Logout successful.")
        validated = await auth_service.validate_access_token(tokens.access_token)
        assert validated.error.code is TokenErrorCode.REVOKED

    @pytest.mark.asyncio
    async def test_refresh(self, auth_service, user):
        """Test that refresh returns a new token set."""
        tokens = (await auth_service.login(TEST_EMAIL, TEST_PASSWORD, IP, UA)).unwrap()

        refreshed = (await auth_service.refresh(tokens.refresh_token, IP, UA)).unwrap()

        assert refreshed.refresh_token != tokens.refresh_token

    @pytest.mark.asyncio
    async def test_login_with_remember_me_token(self, auth_service, user):
        """Test that a remember-me token logs the user in again."""
        tokens = (await auth_service.login(TEST_EMAIL, TEST_PASSWORD, IP, UA, True)).unwrap()

        result = await auth_service.login_with_remember_me(tokens.remember_me_token, IP, UA)

        assert result.unwrap().email == TEST_EMAIL

    @pytest.mark.asyncio
    async def test_revoke_all_remember_me_message(self, auth_service, user):
        """Test the bulk revocation message carries the count."""
        await auth_service.login(TEST_EMAIL, TEST_PASSWORD, IP, UA, True)

        result = await auth_service.revoke_all_remember_me_tokens(user.id)

        assert result == Ok("Revoked 1 Remember Me token(s).")
