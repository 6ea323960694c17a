"""
Onboarding Flow State Machine.

Runtime counterpart of the step graph: declares every structural edge of the
onboarding flow once, and lets the pure graph in step_graph.py decide which
edge fires. The machine's state is the flow's current step.
"""

from typing import Optional

import structlog
from statemachine import State

from careflow.domain.schemas import AuthOutcome, FlowData, FlowPresets, FlowStep, Terminal
from .base import FlowMachine
from .step_graph import initial_step, next_step, previous_step

logger = structlog.get_logger(__name__)


class FlowContext:
    """
    Model object the machine reads its guards from.

    `state` is maintained by python-statemachine; everything else is
    maintained by the FlowController.
    """

    def __init__(
        self,
        flow_id: str,
        data: FlowData,
        presets: FlowPresets,
        is_authenticated: bool = False,
    ):
        self.id = flow_id
        self.state: Optional[str] = None
        self.data = data
        self.presets = presets
        self.authenticated = is_authenticated
        self.outcome: Optional[AuthOutcome] = None


class OnboardingFlowMachine(FlowMachine):
    """
    State machine for the onboarding + identity-verification flow.

    `committing` is entered when the graph reports terminal and held until
    the commit succeeds (`finish`), so a failed commit can be retried.
    """

    intent = State(initial=True, value=FlowStep.INTENT.value)
    provider_type = State(value=FlowStep.PROVIDER_TYPE.value)
    provider_info = State(value=FlowStep.PROVIDER_INFO.value)
    org_search = State(value=FlowStep.ORG_SEARCH.value)
    family_info = State(value=FlowStep.FAMILY_INFO.value)
    family_needs = State(value=FlowStep.FAMILY_NEEDS.value)
    auth = State(value=FlowStep.AUTH.value)
    verify_code = State(value=FlowStep.VERIFY_CODE.value)
    committing = State(value=Terminal.COMMIT.value)
    complete = State(value="complete", final=True)

    advance = (
        intent.to(provider_type, cond="follows_graph")
        | intent.to(family_info, cond="follows_graph")
        | provider_type.to(provider_info, cond="follows_graph")
        | provider_info.to(org_search, cond="follows_graph")
        | provider_info.to(auth, cond="follows_graph")
        | provider_info.to(committing, cond="follows_graph")
        | org_search.to(auth, cond="follows_graph")
        | org_search.to(committing, cond="follows_graph")
        | family_info.to(family_needs, cond="follows_graph")
        | family_needs.to(auth, cond="follows_graph")
        | family_needs.to(committing, cond="follows_graph")
        | auth.to(verify_code, cond="follows_graph")
        | auth.to(committing, cond="follows_graph")
        | verify_code.to(committing, cond="follows_graph")
    )

    go_back = (
        provider_type.to(intent, cond="mirrors_graph")
        | family_info.to(intent, cond="mirrors_graph")
        | provider_info.to(provider_type, cond="mirrors_graph")
        | org_search.to(provider_info, cond="mirrors_graph")
        | family_needs.to(family_info, cond="mirrors_graph")
        | auth.to(org_search, cond="mirrors_graph")
        | auth.to(provider_info, cond="mirrors_graph")
        | auth.to(family_needs, cond="mirrors_graph")
        | verify_code.to(auth, cond="mirrors_graph")
    )

    # Already-authenticated claim flow: explicit transition instead of an
    # ambient side effect. The FlowController guards it with a one-shot token.
    auto_complete = auth.to(committing, cond=["is_claim", "is_authenticated"])

    finish = committing.to(complete)

    def __init__(self, model: FlowContext, **kwargs):
        """
        Initialize the onboarding machine at the entry step for the presets.

        Args:
            model: FlowContext for this flow
            **kwargs: Additional context (user_id, etc.)
        """
        super().__init__(
            model=model,
            start_value=initial_step(model.presets).value,
            **kwargs,
        )

    # Guards
    def follows_graph(self, source: State, target: State) -> bool:
        """Forward edge matches what the step graph computes."""
        ctx = self.model
        try:
            expected = next_step(
                FlowStep(source.value),
                ctx.data,
                is_authenticated=ctx.authenticated,
                outcome=ctx.outcome,
            )
        except ValueError:
            return False
        return expected.value == target.value

    def mirrors_graph(self, source: State, target: State) -> bool:
        """Backward edge matches what the step graph computes."""
        ctx = self.model
        expected = previous_step(FlowStep(source.value), ctx.data, ctx.presets)
        return expected is not None and expected.value == target.value

    def is_claim(self) -> bool:
        return self.model.presets.claim_profile is not None

    def is_authenticated(self) -> bool:
        return bool(self.model.authenticated)

    @property
    def step(self) -> str:
        return self.current_state.value

    @property
    def is_committing(self) -> bool:
        return self.current_state.value == Terminal.COMMIT.value

    def on_transition(self, event: str, source: State, target: State):
        """Hook called on every transition."""
        # The initial activation has no real source state
        self.log_transition(event, getattr(source, "id", None), target.id)

    def on_enter_complete(self):
        logger.info("onboarding_completed", flow_id=self.model.id, user_id=self.user_id)
