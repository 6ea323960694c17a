"""
Onboarding step graph.

Pure functions mapping (current step, flow data, authentication status) to
the next/previous step and to progress metrics. No I/O, no rendering: the
OnboardingFlowMachine and the FlowController both defer to these rules.

Provider path:
    intent? -> provider_type -> provider_info -> org_search? -> auth -> verify_code? -> commit
Family path:
    intent? -> family_info -> family_needs -> auth -> verify_code? -> commit

Authenticated users skip auth/verify_code.
"""

from typing import Optional, Union

from careflow.domain.schemas import (
    AuthMode,
    AuthOutcome,
    FlowData,
    FlowPresets,
    FlowProgress,
    FlowStep,
    Intent,
    ProviderType,
    Terminal,
)

NextStep = Union[FlowStep, Terminal]


def initial_step(presets: FlowPresets) -> FlowStep:
    """Entry step for a given preset configuration."""
    if presets.claim_profile is not None:
        # Claim flow: the listing already carries the data, go straight to auth
        return FlowStep.AUTH
    if presets.intent == Intent.PROVIDER:
        return FlowStep.PROVIDER_INFO if presets.provider_type else FlowStep.PROVIDER_TYPE
    if presets.intent == Intent.FAMILY:
        return FlowStep.FAMILY_INFO
    return FlowStep.INTENT


def _auth_or_commit(is_authenticated: bool) -> NextStep:
    return Terminal.COMMIT if is_authenticated else FlowStep.AUTH


def next_step(
    step: FlowStep,
    data: FlowData,
    *,
    is_authenticated: bool = False,
    outcome: Optional[AuthOutcome] = None,
) -> NextStep:
    """
    Forward edge out of step.

    Args:
        step: Current step
        data: Flow data collected so far
        is_authenticated: Whether an identity is already established
        outcome: Sign-up / sign-in outcome, consulted only when leaving auth

    Raises:
        ValueError: If the data does not determine an edge (e.g. no intent
            chosen on the intent step, or auth left without an outcome)
    """
    if step == FlowStep.INTENT:
        if data.intent == Intent.PROVIDER:
            return FlowStep.PROVIDER_TYPE
        if data.intent == Intent.FAMILY:
            return FlowStep.FAMILY_INFO
        raise ValueError("intent must be chosen before leaving the intent step")

    if step == FlowStep.PROVIDER_TYPE:
        return FlowStep.PROVIDER_INFO

    if step == FlowStep.PROVIDER_INFO:
        if data.provider_type == ProviderType.ORGANIZATION:
            return FlowStep.ORG_SEARCH
        return _auth_or_commit(is_authenticated)

    if step == FlowStep.ORG_SEARCH:
        return _auth_or_commit(is_authenticated)

    if step == FlowStep.FAMILY_INFO:
        return FlowStep.FAMILY_NEEDS

    if step == FlowStep.FAMILY_NEEDS:
        return _auth_or_commit(is_authenticated)

    if step == FlowStep.AUTH:
        if outcome is not None:
            return FlowStep.VERIFY_CODE if outcome.requires_verification else Terminal.COMMIT
        if is_authenticated:
            return Terminal.COMMIT
        raise ValueError("auth step cannot advance without an auth outcome")

    if step == FlowStep.VERIFY_CODE:
        return Terminal.COMMIT

    raise ValueError(f"Unknown step: {step}")


def previous_step(step: FlowStep, data: FlowData, presets: FlowPresets) -> Optional[FlowStep]:
    """
    Backward edge out of step, mirroring next_step.

    Returns None when step is the entry step for these presets (which also
    covers auth in a flow that began as a claim).
    """
    if step == initial_step(presets):
        return None

    if step in (FlowStep.PROVIDER_TYPE, FlowStep.FAMILY_INFO):
        return FlowStep.INTENT
    if step == FlowStep.PROVIDER_INFO:
        # A preset provider type is fixed for the whole flow
        if presets.provider_type is not None:
            return None
        return FlowStep.PROVIDER_TYPE
    if step == FlowStep.ORG_SEARCH:
        return FlowStep.PROVIDER_INFO
    if step == FlowStep.FAMILY_NEEDS:
        return FlowStep.FAMILY_INFO
    if step == FlowStep.AUTH:
        if data.intent == Intent.PROVIDER:
            if data.provider_type == ProviderType.ORGANIZATION:
                return FlowStep.ORG_SEARCH
            return FlowStep.PROVIDER_INFO
        if data.intent == Intent.FAMILY:
            return FlowStep.FAMILY_NEEDS
        return None
    if step == FlowStep.VERIFY_CODE:
        return FlowStep.AUTH
    return None


def can_go_back(step: FlowStep, data: FlowData, presets: FlowPresets) -> bool:
    return previous_step(step, data, presets) is not None


def progress(step: FlowStep, data: FlowData, is_authenticated: bool) -> FlowProgress:
    """
    (step_number, total_steps) for the current path.

    provider+organization: 3 (+1 auth), provider+caregiver: 2 (+1 auth),
    family: 2 (+1 auth). auth and verify_code share the final ordinal.
    """
    if data.intent == Intent.PROVIDER:
        total = 3 if data.provider_type == ProviderType.ORGANIZATION else 2
        ordinals = {
            FlowStep.PROVIDER_TYPE: 1,
            FlowStep.PROVIDER_INFO: 2,
            FlowStep.ORG_SEARCH: 3,
        }
    else:
        total = 2
        ordinals = {
            FlowStep.FAMILY_INFO: 1,
            FlowStep.FAMILY_NEEDS: 2,
        }

    if not is_authenticated:
        total += 1

    if step == FlowStep.INTENT:
        step_number = 0
    elif step in (FlowStep.AUTH, FlowStep.VERIFY_CODE):
        step_number = total
    else:
        step_number = min(ordinals.get(step, 1), total)

    return FlowProgress(step_number=step_number, total_steps=total)


def show_progress(step: FlowStep, data: FlowData) -> bool:
    """Progress is hidden on the intent step and until an intent exists."""
    return step != FlowStep.INTENT and data.intent is not None


def step_title(step: FlowStep, data: FlowData, auth_mode: AuthMode = AuthMode.SIGN_UP) -> str:
    if step == FlowStep.PROVIDER_INFO:
        if data.provider_type == ProviderType.ORGANIZATION:
            return "About your organization"
        return "About you"
    if step == FlowStep.AUTH:
        return "Welcome back" if auth_mode == AuthMode.SIGN_IN else "Create your account"
    titles = {
        FlowStep.INTENT: "Welcome",
        FlowStep.PROVIDER_TYPE: "Tell us about yourself",
        FlowStep.ORG_SEARCH: "Is your organization listed?",
        FlowStep.FAMILY_INFO: "Who needs care?",
        FlowStep.FAMILY_NEEDS: "Care preferences",
        FlowStep.VERIFY_CODE: "Verify your email",
    }
    return titles[step]
