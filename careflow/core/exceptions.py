"""Custom exceptions for domain-specific errors"""

from typing import Any, Dict, Optional


class DomainException(Exception):
    """Base exception for all domain errors"""

    error_code = "DOMAIN_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# Client-side validation
class ValidationError(DomainException):
    """Raised when step input fails client-local validation"""

    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str = "Please complete the required fields.",
        field_errors: Optional[Dict[str, str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.field_errors = field_errors or {}
        super().__init__(message, details)


# Authentication Errors
class AuthenticationError(DomainException):
    """Raised when authentication fails"""

    error_code = "AUTHENTICATION_FAILED"


class DuplicateIdentityError(AuthenticationError):
    """Raised when signing up with an email that is already registered"""

    error_code = "DUPLICATE_IDENTITY"

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message="This email is already registered. Try signing in instead.",
            details=details,
        )


class InvalidCredentialsError(AuthenticationError):
    """Raised when email/password do not match. Never says which one was wrong."""

    error_code = "INVALID_CREDENTIALS"

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message="Wrong email or password. Please try again.",
            details=details,
        )


class AccountNotFoundError(AuthenticationError):
    """Raised when a sign-in code is requested for an unknown email"""

    error_code = "ACCOUNT_NOT_FOUND"

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message="No account found with this email. Please sign up first.",
            details=details,
        )


class CodeExpiredError(AuthenticationError):
    """Raised when a verification code has expired"""

    error_code = "CODE_EXPIRED"

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message="This code has expired. Please request a new one.",
            details=details,
        )


class CodeInvalidError(AuthenticationError):
    """Raised when a verification code does not match"""

    error_code = "CODE_INVALID"

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message="Invalid code. Please check and try again.",
            details=details,
        )


class ResendCooldownError(DomainException):
    """Raised when a code resend is requested before the cooldown elapsed"""

    error_code = "RESEND_COOLDOWN"

    def __init__(self, seconds_remaining: int, details: Optional[Dict[str, Any]] = None):
        self.seconds_remaining = seconds_remaining
        super().__init__(
            message=f"Please wait {seconds_remaining}s before requesting a new code.",
            details=details or {"seconds_remaining": seconds_remaining},
        )


# Commit invariants
class NotAuthenticatedError(DomainException):
    """Raised when commit runs without a resolved identity"""

    error_code = "NOT_AUTHENTICATED"

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(message="Not authenticated. Please try again.", details=details)


class MissingIntentError(DomainException):
    """Raised when commit runs without an intent. Never defaulted."""

    error_code = "MISSING_INTENT"

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message="Please select whether you're looking for care or providing care.",
            details=details,
        )


class CommitFailedError(DomainException):
    """Raised when a commit step fails against the backing store"""

    error_code = "COMMIT_FAILED"

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        super().__init__(message=f"Something went wrong: {reason}", details=details)


# Profile Errors
class ProfileNotFoundError(DomainException):
    """Raised when profile does not exist"""

    error_code = "PROFILE_NOT_FOUND"


# External Service Errors
class ExternalServiceError(DomainException):
    """Raised when external service call fails"""

    error_code = "NETWORK_OR_BACKEND_FAILURE"

    user_message = "Something went wrong. Please try again."


class SupabaseError(ExternalServiceError):
    """Raised when Supabase operation fails"""

    pass

