"""
Identity gateway backed by Supabase Auth.

One gateway per flow: it wraps its own anon client, so the session a
sign-up / sign-in / OTP verification establishes belongs to that flow only.
Transport, hashing and token issuance stay inside Supabase.
"""

from typing import Any, Optional

import structlog
from pybreaker import CircuitBreaker

import supabase  # type: ignore[import-not-found]

from careflow.core.config import settings
from careflow.core.exceptions import (
    AccountNotFoundError,
    AuthenticationError,
    CodeExpiredError,
    CodeInvalidError,
    DomainException,
    DuplicateIdentityError,
    InvalidCredentialsError,
    SupabaseError,
)
from careflow.domain.schemas import AuthOutcome, Identity
from careflow.infrastructure.supabase_client import build_client_options

logger = structlog.get_logger(__name__)

auth_breaker = CircuitBreaker(fail_max=5, reset_timeout=60)


def _error_text(error: Exception) -> str:
    return str(getattr(error, "message", None) or error)


def classify_auth_error(error: Exception, operation: str) -> DomainException:
    """
    Map a Supabase Auth failure to the engine's error taxonomy.

    Errors carrying an HTTP status came from the auth API and are user-facing;
    anything else is treated as a network / backend failure.
    """
    message = _error_text(error).lower()
    code = str(getattr(error, "code", None) or "").lower()

    if "already registered" in message or code in ("user_already_exists", "email_exists"):
        return DuplicateIdentityError()
    if "invalid login credentials" in message or code == "invalid_credentials":
        return InvalidCredentialsError()

    if operation == "verify_code":
        # Supabase reports a wrong token as "Token has expired or is invalid"
        if "invalid" in message:
            return CodeInvalidError()
        if "expired" in message:
            return CodeExpiredError()

    if operation == "send_code" and (
        "not found" in message or "not registered" in message or "signups not allowed" in message
    ):
        return AccountNotFoundError()

    if getattr(error, "status", None) is not None:
        return AuthenticationError(_error_text(error))
    return SupabaseError(f"Auth service unavailable: {_error_text(error)}")


class SupabaseAuthGateway:
    """
    Sign-up, sign-in, OTP issuance / verification and current-user lookup.

    Every failure is raised as a DomainException subclass.
    """

    def __init__(self, client: Optional[Any] = None, access_token: Optional[str] = None):
        """
        Args:
            client: Preconfigured anon Supabase client (a fresh one if omitted)
            access_token: Bearer token of an already signed-in caller, if any
        """
        self.client: Any = client or supabase.create_client(  # type: ignore[attr-defined]
            settings.supabase_url, settings.supabase_anon_key, options=build_client_options()
        )
        self._access_token = access_token

    @auth_breaker
    async def sign_up(self, email: str, password: str, display_name: str) -> AuthOutcome:
        try:
            response = self.client.auth.sign_up(
                {
                    "email": email,
                    "password": password,
                    "options": {"data": {"display_name": display_name or None}},
                }
            )
        except Exception as e:
            logger.warning("signup_error", email=email, error=_error_text(e))
            raise classify_auth_error(e, "sign_up")

        user = getattr(response, "user", None)
        session = getattr(response, "session", None)

        if session is None:
            # Supabase hides duplicate sign-ups behind a user with no identities
            if user is not None and getattr(user, "identities", None) == []:
                logger.info("signup_duplicate_identity", email=email)
                raise DuplicateIdentityError()
            logger.info("signup_requires_verification", email=email)
            return AuthOutcome(user_id=getattr(user, "id", None), requires_verification=True)

        self._access_token = session.access_token
        logger.info("user_signup_success", user_id=user.id)
        return AuthOutcome(user_id=user.id, requires_verification=False)

    @auth_breaker
    async def sign_in(self, email: str, password: str) -> AuthOutcome:
        try:
            response = self.client.auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        except Exception as e:
            logger.warning("signin_error", email=email, error=_error_text(e))
            raise classify_auth_error(e, "sign_in")

        if not response or not response.user:
            logger.warning("user_signin_failed", email=email)
            raise InvalidCredentialsError()

        if response.session:
            self._access_token = response.session.access_token
        logger.info("user_signin_success", user_id=response.user.id)
        return AuthOutcome(user_id=response.user.id, requires_verification=False)

    @auth_breaker
    async def send_verification_code(self, email: str) -> None:
        """Email a one-time code to an existing user (never creates one)."""
        try:
            self.client.auth.sign_in_with_otp(
                {"email": email, "options": {"should_create_user": False}}
            )
            logger.info("verification_code_sent", email=email)
        except Exception as e:
            logger.warning("send_verification_code_error", email=email, error=_error_text(e))
            raise classify_auth_error(e, "send_code")

    @auth_breaker
    async def verify_code(self, email: str, code: str) -> Identity:
        try:
            response = self.client.auth.verify_otp(
                {"email": email, "token": code, "type": "email"}
            )
        except Exception as e:
            logger.warning("verify_code_error", email=email, error=_error_text(e))
            raise classify_auth_error(e, "verify_code")

        if not response or not response.user:
            raise CodeInvalidError()

        if getattr(response, "session", None):
            self._access_token = response.session.access_token
        logger.info("email_verification_success", user_id=response.user.id)
        return _to_identity(response.user)

    @auth_breaker
    async def current_user(self) -> Optional[Identity]:
        """The identity this flow is signed in as, or None."""
        try:
            if self._access_token:
                response = self.client.auth.get_user(self._access_token)
            else:
                response = self.client.auth.get_user()
        except Exception as e:
            if getattr(e, "status", None) is not None:
                # Expired / revoked token: treat as signed out
                logger.info("current_user_unauthenticated", error=_error_text(e))
                return None
            logger.error("current_user_error", error=_error_text(e))
            raise SupabaseError(f"Auth service unavailable: {_error_text(e)}")

        if not response or not response.user:
            return None
        return _to_identity(response.user)


def _to_identity(user: Any) -> Identity:
    return Identity(
        id=str(user.id),
        email=getattr(user, "email", None),
        user_metadata=getattr(user, "user_metadata", None) or {},
    )
