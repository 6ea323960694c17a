"""
Client-local validation for onboarding steps.

Failing validation blocks the step from advancing and never reaches the
network. Each validator returns a dict of field -> message (empty when valid).
"""

import re
from typing import Dict, Optional, Tuple

from careflow.core.config import settings
from careflow.domain.schemas import CARE_TYPES, AuthMode, FlowData, FlowStep, ProviderType

_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def validate_email(email: str) -> Tuple[bool, Optional[str]]:
    """
    Validate email format.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not email or not email.strip():
        return False, "Please enter your email address."
    if len(email) > 254:
        return False, "Email is too long."
    if not _EMAIL_PATTERN.match(email.strip()):
        return False, "Please enter a valid email address."
    return True, None


def validate_password(password: str) -> Tuple[bool, Optional[str]]:
    """Only length is checked here; strength rules belong to the identity provider."""
    if len(password or "") < settings.password_min_length:
        return False, f"Password must be at least {settings.password_min_length} characters."
    return True, None


def validate_code(code: str) -> Tuple[bool, Optional[str]]:
    length = settings.otp_code_length
    if len(code or "") != length or not code.isalnum():
        return False, f"Please enter the {length}-digit code."
    return True, None


def _provider_info_errors(data: FlowData) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if data.provider_type == ProviderType.ORGANIZATION:
        if not data.org_name.strip():
            errors["org_name"] = "Organization name is required."
    elif not data.display_name.strip():
        errors["display_name"] = "Your name is required."
    if not data.city.strip() and not data.state.strip():
        errors["city"] = "Please enter a city or state."
    if not data.care_types:
        errors["care_types"] = "Select at least one type of care."
    elif not set(data.care_types) <= set(CARE_TYPES):
        errors["care_types"] = "Select care types from the list."
    if not data.phone.strip():
        errors["phone"] = "Phone number is required."
    return errors


def validate_step(
    step: FlowStep,
    data: FlowData,
    auth_mode: AuthMode = AuthMode.SIGN_UP,
    code: str = "",
) -> Dict[str, str]:
    """
    Field errors blocking step from advancing.

    Args:
        step: Step being submitted
        data: Current flow data
        auth_mode: Sign-up or sign-in (auth step only)
        code: Entered verification code (verify_code step only)
    """
    if step == FlowStep.INTENT:
        return {} if data.intent else {"intent": "Please choose an option."}

    if step == FlowStep.PROVIDER_TYPE:
        return {} if data.provider_type else {"provider_type": "Please choose an option."}

    if step == FlowStep.PROVIDER_INFO:
        return _provider_info_errors(data)

    if step == FlowStep.FAMILY_INFO:
        if not data.display_name.strip():
            return {"display_name": "Your name is required."}
        return {}

    if step == FlowStep.AUTH:
        errors: Dict[str, str] = {}
        ok, message = validate_email(data.email)
        if not ok:
            errors["email"] = message
        if auth_mode == AuthMode.SIGN_UP:
            ok, message = validate_password(data.password)
            if not ok:
                errors["password"] = message
        elif not data.password:
            errors["password"] = "Please enter your password."
        return errors

    if step == FlowStep.VERIFY_CODE:
        ok, message = validate_code(code)
        return {} if ok else {"code": message}

    # org_search and family_needs have no required fields
    return {}
