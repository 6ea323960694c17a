"""
Flow controller for the onboarding + identity-verification flow.

Top-level coordinator: drives the OnboardingFlowMachine, owns FlowData and the
draft, calls the identity gateway for auth-bearing steps and hands off to the
CommitOrchestrator once per successful flow. Every public operation returns
a StepResult; domain errors never escape.
"""

import asyncio
import math
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

import structlog
from pybreaker import CircuitBreakerError
from statemachine.exceptions import TransitionNotAllowed

from careflow.core.config import settings
from careflow.core.exceptions import (
    CodeExpiredError,
    CodeInvalidError,
    DomainException,
    ExternalServiceError,
    ResendCooldownError,
    SupabaseError,
    ValidationError,
)
from careflow.domain.schemas import (
    AUTH_STEPS,
    BRANCH_FIELD_STEPS,
    CONTROLLER_ONLY_FIELDS,
    AuthMode,
    AuthOutcome,
    CommitResult,
    FlowData,
    FlowPresets,
    FlowStep,
    FlowView,
    ProfileSnapshot,
    StepResult,
)
from careflow.infrastructure.supabase_auth import SupabaseAuthGateway
from careflow.infrastructure.supabase_client import SupabaseClient
from careflow.services.onboarding.commit_orchestrator import CommitOrchestrator
from careflow.services.onboarding.draft_store import DraftStore
from careflow.state_machines import step_graph
from careflow.state_machines.onboarding_flow import FlowContext, OnboardingFlowMachine
from careflow.utils.step_validation import validate_email, validate_step

logger = structlog.get_logger(__name__)

COMPLETE = "complete"


class FlowNotOpenError(RuntimeError):
    """Raised when an operation is attempted on a closed flow."""


class FlowController:
    def __init__(
        self,
        supabase_client: SupabaseClient,
        gateway: SupabaseAuthGateway,
        presets: Optional[FlowPresets] = None,
        draft_store: Optional[DraftStore] = None,
        flow_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            supabase_client: Service client for account/profile/membership rows
            gateway: Identity gateway scoped to this flow
            presets: Caller-supplied intent / provider type / claim target
            draft_store: Draft persistence (default scope if omitted)
            flow_id: Identifier used in logs and by the HTTP registry
            clock: Monotonic seconds, drives the resend cooldown
        """
        self.flow_id = flow_id or uuid.uuid4().hex
        self.presets = presets or FlowPresets()
        self._db = supabase_client
        self._gateway = gateway
        self._drafts = draft_store or DraftStore()
        self._orchestrator = CommitOrchestrator(supabase_client, gateway, self._drafts)
        self._clock = clock
        self._lock = asyncio.Lock()

        self._context: Optional[FlowContext] = None
        self._machine: Optional[OnboardingFlowMachine] = None
        self._commit_token: Optional[str] = None
        self._commit_running = False
        self._resend_available_at = 0.0

        self.auth_mode = self._default_auth_mode()
        self.otp_code = ""
        self.search_results: List[ProfileSnapshot] = []
        self.result: Optional[CommitResult] = None

    # ──────────────────────────────────────────────────────────
    # State accessors
    # ──────────────────────────────────────────────────────────

    @property
    def is_open(self) -> bool:
        return self._machine is not None

    @property
    def step(self) -> str:
        return self._require_machine().step

    @property
    def data(self) -> FlowData:
        return self._require_context().data

    @property
    def is_authenticated(self) -> bool:
        return self._require_context().authenticated

    @property
    def submitting(self) -> bool:
        return self._lock.locked() or self._commit_running

    @property
    def resend_cooldown_remaining(self) -> int:
        return max(0, math.ceil(self._resend_available_at - self._clock()))

    def _require_machine(self) -> OnboardingFlowMachine:
        if self._machine is None:
            raise FlowNotOpenError(f"Flow {self.flow_id} is not open")
        return self._machine

    def _require_context(self) -> FlowContext:
        if self._context is None:
            raise FlowNotOpenError(f"Flow {self.flow_id} is not open")
        return self._context

    def _default_auth_mode(self) -> AuthMode:
        return AuthMode.SIGN_IN if self.presets.default_to_sign_in else AuthMode.SIGN_UP

    def _current_flow_step(self) -> Optional[FlowStep]:
        try:
            return FlowStep(self.step)
        except ValueError:
            return None

    # ──────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────

    def _initial_data(self) -> FlowData:
        if self.presets.claim_profile is not None:
            return FlowData.from_claim_profile(self.presets.claim_profile)
        return FlowData(intent=self.presets.intent, provider_type=self.presets.provider_type)

    async def open(self) -> StepResult:
        """
        Start the flow at its entry step, restoring draft data if any.

        An already-authenticated claim flow commits immediately.
        """
        if self.is_open:
            return self._ok()

        identity = None
        try:
            identity = await self._gateway.current_user()
        except (DomainException, CircuitBreakerError) as e:
            logger.warning("flow_identity_lookup_failed", flow_id=self.flow_id, error=str(e))

        data = self._initial_data()
        self._drafts.acquire()
        if self.presets.claim_profile is None:
            restored = await self._drafts.load(self.presets.intent)
            if restored:
                data = data.merge(restored)
                # Presets describe this invocation and win over the draft
                presets = {
                    key: value
                    for key, value in (
                        ("intent", self.presets.intent),
                        ("provider_type", self.presets.provider_type),
                    )
                    if value is not None
                }
                data = data.merge(presets)

        self._context = FlowContext(self.flow_id, data, self.presets, identity is not None)
        self._machine = OnboardingFlowMachine(
            self._context, user_id=identity.id if identity else None
        )
        self._commit_token = uuid.uuid4().hex
        self.result = None

        logger.info(
            "flow_opened",
            flow_id=self.flow_id,
            step=self.step,
            intent=data.intent.value if data.intent else None,
            claim=self.presets.claim_profile is not None,
            authenticated=identity is not None,
        )

        if self.presets.claim_profile is not None and identity is not None:
            async with self._lock:
                return await self._auto_complete_claim()
        return self._ok()

    async def close(self, discard_draft: bool = False) -> bool:
        """
        Close the flow, dropping in-memory data. The draft stays for resumption
        unless discard_draft is set. Refused while a commit is running.
        """
        if self._commit_running:
            logger.warning("flow_close_refused_commit_in_progress", flow_id=self.flow_id)
            return False

        if self._drafts.held:
            await self._drafts.release(discard=discard_draft)

        self._context = None
        self._machine = None
        self._commit_token = None
        self._resend_available_at = 0.0
        self.auth_mode = self._default_auth_mode()
        self.otp_code = ""
        self.search_results = []
        logger.info("flow_closed", flow_id=self.flow_id, draft_discarded=discard_draft)
        return True

    # ──────────────────────────────────────────────────────────
    # Data
    # ──────────────────────────────────────────────────────────

    async def update_data(self, partial: Dict[str, Any]) -> StepResult:
        """
        Merge partial into FlowData and write the draft (outside auth steps).

        Listing linkage is rejected here; it is set through select_organization.
        intent and provider_type only change on their own steps.
        """
        context = self._require_context()
        locked = sorted(set(partial) & CONTROLLER_ONLY_FIELDS)
        if locked:
            return self._fail(ValidationError(f"Fields cannot be set directly: {locked}"))

        flow_step = self._current_flow_step()
        for field, owner in BRANCH_FIELD_STEPS.items():
            changed = field in partial and partial[field] != getattr(context.data, field)
            if changed and flow_step != owner:
                message = f"{field} can only be changed on the {owner.value} step"
                return self._fail(
                    ValidationError("Go back to change this choice.", field_errors={field: message})
                )
        return await self._apply_data(partial)

    async def _apply_data(self, partial: Dict[str, Any]) -> StepResult:
        context = self._require_context()
        try:
            context.data = context.data.merge(partial)
        except ValueError as e:
            return self._fail(ValidationError(str(e)))

        flow_step = self._current_flow_step()
        if flow_step is not None and flow_step not in AUTH_STEPS:
            await self._drafts.save(context.data)
        return self._ok()

    def set_code(self, code: str) -> None:
        self.otp_code = (code or "").strip()

    # ──────────────────────────────────────────────────────────
    # Navigation
    # ──────────────────────────────────────────────────────────

    async def choose_intent(self, intent) -> StepResult:
        result = await self.update_data({"intent": intent})
        if not result.ok:
            return result
        return await self.submit()

    async def choose_provider_type(self, provider_type) -> StepResult:
        result = await self.update_data({"provider_type": provider_type})
        if not result.ok:
            return result
        return await self.submit()

    def can_go_back(self) -> bool:
        flow_step = self._current_flow_step()
        if flow_step is None or self.submitting:
            return False
        return step_graph.can_go_back(flow_step, self.data, self.presets)

    def go_back(self) -> StepResult:
        machine = self._require_machine()
        if not self.can_go_back():
            return StepResult(ok=False, step=self.step, ignored=True)
        leaving = self.step
        machine.go_back()
        machine.clear_error()
        if leaving == FlowStep.VERIFY_CODE.value:
            self.otp_code = ""
        return self._ok()

    def set_auth_mode(self, mode: AuthMode) -> StepResult:
        machine = self._require_machine()
        if self.step != FlowStep.AUTH.value:
            return StepResult(ok=False, step=self.step, ignored=True)
        self.auth_mode = AuthMode(mode)
        machine.clear_error()
        return self._ok()

    # ──────────────────────────────────────────────────────────
    # Submission
    # ──────────────────────────────────────────────────────────

    async def submit(self, code: Optional[str] = None) -> StepResult:
        """
        Submit the current step.

        While a submission is in flight further calls are dropped
        (StepResult.ignored) without touching the network.
        """
        machine = self._require_machine()
        if self.submitting:
            logger.info("submit_ignored_in_flight", flow_id=self.flow_id, step=self.step)
            return StepResult(ok=False, step=self.step, ignored=True)

        async with self._lock:
            machine.clear_error()
            return await self._guarded(self._submit_current, code)

    async def send_sign_in_code(self) -> StepResult:
        """Sign in with an emailed code instead of a password."""
        machine = self._require_machine()
        if self.step != FlowStep.AUTH.value or self.submitting:
            return StepResult(ok=False, step=self.step, ignored=True)

        async with self._lock:
            machine.clear_error()
            return await self._guarded(self._send_sign_in_code)

    async def resend_code(self) -> StepResult:
        """Resend the verification code, honouring the client-side cooldown."""
        machine = self._require_machine()
        if self.step != FlowStep.VERIFY_CODE.value or self.submitting:
            return StepResult(ok=False, step=self.step, ignored=True)

        remaining = self.resend_cooldown_remaining
        if remaining > 0:
            return self._fail(ResendCooldownError(remaining))

        async with self._lock:
            machine.clear_error()
            return await self._guarded(self._resend_code)

    async def _guarded(self, operation, *args) -> StepResult:
        try:
            return await operation(*args)
        except DomainException as e:
            return self._fail(e)
        except CircuitBreakerError as e:
            return self._fail(SupabaseError(f"Service temporarily unavailable: {e}"))
        except TransitionNotAllowed as e:
            logger.warning("flow_transition_rejected", flow_id=self.flow_id, step=self.step, error=str(e))
            return self._fail(ValidationError("Please complete this step before continuing."))

    async def _submit_current(self, code: Optional[str]) -> StepResult:
        step = self.step
        if step == COMPLETE:
            return StepResult(ok=True, step=step, commit=self.result)
        if self._require_machine().is_committing:
            # Manual retry after a failed commit
            return await self._run_commit()

        flow_step = FlowStep(step)
        if flow_step == FlowStep.AUTH:
            return await self._submit_auth()
        if flow_step == FlowStep.VERIFY_CODE:
            return await self._submit_code(code)

        errors = validate_step(flow_step, self.data)
        if errors:
            raise ValidationError(field_errors=errors)
        return await self._advance()

    async def _advance(self, outcome: Optional[AuthOutcome] = None) -> StepResult:
        machine = self._require_machine()
        self._require_context().outcome = outcome
        machine.advance()
        if machine.is_committing:
            return await self._run_commit()
        return self._ok()

    async def _submit_auth(self) -> StepResult:
        data = self.data
        errors = validate_step(FlowStep.AUTH, data, self.auth_mode)
        if errors:
            raise ValidationError(field_errors=errors)

        if self.auth_mode == AuthMode.SIGN_UP:
            outcome = await self._gateway.sign_up(
                data.email, data.password, data.display_name or data.org_name
            )
            if outcome.requires_verification:
                # Sign-up sends a link by default; the flow wants a code
                try:
                    await self._gateway.send_verification_code(data.email)
                except (DomainException, CircuitBreakerError) as e:
                    logger.warning("verification_code_send_failed", flow_id=self.flow_id, error=str(e))
                self._start_cooldown(settings.resend_cooldown_initial_seconds)
        else:
            outcome = await self._gateway.sign_in(data.email, data.password)

        context = self._require_context()
        context.data = data.merge({"password": ""})
        context.authenticated = not outcome.requires_verification
        logger.info(
            "flow_auth_succeeded",
            flow_id=self.flow_id,
            mode=self.auth_mode.value,
            requires_verification=outcome.requires_verification,
        )
        return await self._advance(outcome)

    async def _send_sign_in_code(self) -> StepResult:
        email = self.data.email
        ok, message = validate_email(email)
        if not ok:
            raise ValidationError(message, field_errors={"email": message})
        await self._gateway.send_verification_code(email)
        self._start_cooldown(settings.resend_cooldown_initial_seconds)
        return await self._advance(AuthOutcome(requires_verification=True))

    async def _submit_code(self, code: Optional[str]) -> StepResult:
        if code is not None:
            self.set_code(code)
        errors = validate_step(FlowStep.VERIFY_CODE, self.data, code=self.otp_code)
        if errors:
            raise ValidationError(field_errors=errors)

        try:
            await self._gateway.verify_code(self.data.email, self.otp_code)
        except (CodeInvalidError, CodeExpiredError):
            # Only the code is reset, never the flow
            self.otp_code = ""
            raise

        self.otp_code = ""
        self._require_context().authenticated = True
        return await self._advance()

    async def _resend_code(self) -> StepResult:
        await self._gateway.send_verification_code(self.data.email)
        self._start_cooldown(settings.resend_cooldown_seconds)
        self.otp_code = ""
        return self._ok()

    def _start_cooldown(self, seconds: int) -> None:
        self._resend_available_at = self._clock() + seconds

    # ──────────────────────────────────────────────────────────
    # Commit
    # ──────────────────────────────────────────────────────────

    async def _auto_complete_claim(self) -> StepResult:
        """Commit an already-authenticated claim flow, at most once per open."""
        token, self._commit_token = self._commit_token, None
        if token is None:
            logger.info("claim_auto_complete_skipped", flow_id=self.flow_id)
            return StepResult(ok=False, step=self.step, ignored=True)
        self._require_machine().auto_complete()
        logger.info("claim_auto_complete", flow_id=self.flow_id, idempotency_token=token)
        return await self._run_commit()

    async def _run_commit(self) -> StepResult:
        machine = self._require_machine()
        self._commit_running = True
        try:
            result = await self._orchestrator.commit(self.data)
        finally:
            self._commit_running = False

        self.result = result
        if result.ok:
            machine.finish()
            return StepResult(ok=True, step=self.step, commit=result)

        machine.record_error(result.error_code, result.error_message)
        logger.warning("flow_commit_failed", flow_id=self.flow_id, error_code=result.error_code)
        return StepResult(
            ok=False,
            step=self.step,
            error_code=result.error_code,
            error_message=result.error_message,
            commit=result,
        )

    # ──────────────────────────────────────────────────────────
    # Organization search (claim an existing listing)
    # ──────────────────────────────────────────────────────────

    async def search_organizations(self, query: Optional[str] = None) -> StepResult:
        if self.step != FlowStep.ORG_SEARCH.value:
            return StepResult(ok=False, step=self.step, ignored=True)
        query = query if query is not None else self.data.org_name
        try:
            rows = await self._db.search_unclaimed_organizations(query, state=self.data.state)
        except (DomainException, CircuitBreakerError) as e:
            self.search_results = []
            logger.warning("org_search_failed", flow_id=self.flow_id, error=str(e))
            return self._fail(SupabaseError(str(e)))
        self.search_results = [ProfileSnapshot.model_validate(row) for row in rows]
        return self._ok()

    async def select_organization(self, profile_id: Optional[str]) -> StepResult:
        """Pick a search result to claim, or clear the selection with None."""
        if self.step != FlowStep.ORG_SEARCH.value:
            return StepResult(ok=False, step=self.step, ignored=True)
        if profile_id is None:
            return await self._apply_data({"claimed_profile_id": None, "claimed_profile": None})

        profile = next((p for p in self.search_results if p.id == profile_id), None)
        if profile is None:
            return self._fail(ValidationError("Please choose an organization from the results."))
        return await self._apply_data({"claimed_profile_id": profile.id, "claimed_profile": profile})

    # ──────────────────────────────────────────────────────────
    # Results
    # ──────────────────────────────────────────────────────────

    def _ok(self) -> StepResult:
        return StepResult(ok=True, step=self.step)

    def _fail(self, error: DomainException) -> StepResult:
        message = error.user_message if isinstance(error, ExternalServiceError) else error.message
        if self._machine is not None:
            self._machine.record_error(error.error_code, message)
        log = logger.warning if isinstance(error, ExternalServiceError) else logger.info
        log(
            "flow_step_failed",
            flow_id=self.flow_id,
            step=self.step if self._machine else None,
            error_code=error.error_code,
            error=error.message,
        )
        return StepResult(
            ok=False,
            step=self.step if self._machine else "closed",
            error_code=error.error_code,
            error_message=message,
            field_errors=getattr(error, "field_errors", {}),
        )

    def view(self) -> FlowView:
        machine = self._require_machine()
        data = self.data
        flow_step = self._current_flow_step()
        if flow_step is not None:
            title = step_graph.step_title(flow_step, data, self.auth_mode)
            progress = step_graph.progress(flow_step, data, self.is_authenticated)
            show_progress = step_graph.show_progress(flow_step, data)
        else:
            title = "Setting up your profile" if machine.is_committing else "All set"
            progress = step_graph.progress(FlowStep.AUTH, data, self.is_authenticated)
            show_progress = False

        return FlowView(
            flow_id=self.flow_id,
            step=self.step,
            title=title,
            progress=progress,
            show_progress=show_progress,
            can_go_back=self.can_go_back(),
            auth_mode=self.auth_mode,
            submitting=self.submitting,
            resend_cooldown_seconds=self.resend_cooldown_remaining,
            otp_code=self.otp_code,
            error_code=machine.error_code,
            error_message=machine.error_message,
            search_results=self.search_results,
            selected_profile_id=data.claimed_profile_id,
            data=data.model_dump(mode="json", exclude={"password"}),
            result=self.result,
        )
