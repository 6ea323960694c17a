"""
Commit orchestrator for completed onboarding flows.

Turns the collected FlowData into durable records:
1. resolve the signed-in identity
2. ensure an account row exists
3. claim-merge, or create a provider / family profile
4. point the account at the profile and mark onboarding complete
5. ensure a free membership for providers
6. release (delete) the draft

Steps 2-6 are not transactional. A failure part-way can leave e.g. an account
without a profile; a retry resumes safely because step 2 only ensures.
"""

from typing import Any, Dict, Optional

import structlog
from pybreaker import CircuitBreakerError

from careflow.core.exceptions import (
    CommitFailedError,
    DomainException,
    MissingIntentError,
    NotAuthenticatedError,
    ProfileNotFoundError,
)
from careflow.domain.schemas import (
    ClaimState,
    CommitResult,
    FlowData,
    Identity,
    Intent,
    ProfileSnapshot,
    ProfileType,
    ProviderType,
)
from careflow.infrastructure.supabase_auth import SupabaseAuthGateway
from careflow.infrastructure.supabase_client import SupabaseClient
from careflow.services.onboarding.draft_store import DraftStore
from careflow.utils.slug import generate_slug

logger = structlog.get_logger(__name__)

LISTING_ALREADY_CLAIMED = "This listing has already been claimed"


def derive_display_name(data: FlowData, identity: Identity) -> str:
    """Flow-collected name, else the local part of the identity's email."""
    if data.display_name.strip():
        return data.display_name.strip()
    if data.org_name.strip():
        return data.org_name.strip()
    return (identity.email or "").split("@")[0]


def build_claim_update(target: ProfileSnapshot, data: FlowData, account_id: str) -> Dict[str, Any]:
    """
    Fields to write when claiming an existing listing.

    Flow values only fill fields the listing has left empty; populated
    listing data is never overwritten.
    """
    update: Dict[str, Any] = {
        "account_id": account_id,
        "claim_state": ClaimState.PENDING.value,
    }
    if not (target.display_name or "").strip() and data.org_name:
        update["display_name"] = data.org_name
    if not target.city and data.city:
        update["city"] = data.city
    if not target.state and data.state:
        update["state"] = data.state
    if not target.zip and data.zip:
        update["zip"] = data.zip
    if not target.category and data.category:
        update["category"] = data.category.value
    if not target.care_types and data.care_types:
        update["care_types"] = list(data.care_types)
    if not (target.description or "").strip() and data.description:
        update["description"] = data.description
    if not target.phone and data.phone:
        update["phone"] = data.phone
    return update


def build_provider_record(data: FlowData, account_id: str) -> Dict[str, Any]:
    is_caregiver = data.provider_type == ProviderType.CAREGIVER
    display_name = data.display_name if is_caregiver else data.org_name
    return {
        "account_id": account_id,
        "slug": generate_slug(display_name, data.city, data.state),
        "type": ProfileType.CAREGIVER.value if is_caregiver else ProfileType.ORGANIZATION.value,
        "category": data.category.value if data.category else None,
        "display_name": display_name,
        "description": data.description or None,
        "phone": data.phone or None,
        "city": data.city or None,
        "state": data.state or None,
        "zip": data.zip or None,
        "care_types": list(data.care_types),
        "claim_state": ClaimState.PENDING.value,
        "verification_state": "unverified",
        "source": "user_created",
        "is_active": True,
        "metadata": {
            "visible_to_families": data.visible_to_families,
            "visible_to_providers": data.visible_to_providers,
        },
    }


def build_family_record(data: FlowData, account_id: str) -> Dict[str, Any]:
    return {
        "account_id": account_id,
        "slug": generate_slug(data.display_name, data.city, data.state),
        "type": ProfileType.FAMILY.value,
        "display_name": data.display_name,
        "city": data.city or None,
        "state": data.state or None,
        "zip": data.zip or None,
        "care_types": list(data.care_needs),
        # Self-service: there is no external listing to claim
        "claim_state": ClaimState.CLAIMED.value,
        "verification_state": "unverified",
        "source": "user_created",
        "is_active": True,
        "metadata": {
            "care_recipient_name": data.care_recipient_name or None,
            "care_recipient_relation": data.care_recipient_relation or None,
        },
    }


def _failure(error: DomainException, intent: Optional[Intent] = None) -> CommitResult:
    return CommitResult(intent=intent, error_code=error.error_code, error_message=error.message)


class CommitOrchestrator:
    def __init__(
        self,
        supabase_client: SupabaseClient,
        gateway: SupabaseAuthGateway,
        draft_store: DraftStore,
    ):
        self._db = supabase_client
        self._gateway = gateway
        self._drafts = draft_store

    async def commit(self, data: FlowData) -> CommitResult:
        """
        Persist a completed flow. Never raises; failures come back typed.

        Returns:
            CommitResult with profile_id, or with error_code NOT_AUTHENTICATED,
            MISSING_INTENT or COMMIT_FAILED
        """
        try:
            identity = await self._gateway.current_user()
        except (DomainException, CircuitBreakerError) as e:
            logger.error("commit_identity_lookup_failed", error=str(e))
            return _failure(CommitFailedError(str(e)), data.intent)

        if identity is None:
            # Unreachable through the step graph; reported, not raised
            logger.error("commit_invariant_violation", reason="not_authenticated")
            return _failure(NotAuthenticatedError(), data.intent)

        if data.intent is None:
            logger.error("commit_invariant_violation", reason="missing_intent", user_id=identity.id)
            return _failure(MissingIntentError())

        if data.intent == Intent.PROVIDER and data.provider_type is None:
            logger.error(
                "commit_invariant_violation", reason="missing_provider_type", user_id=identity.id
            )
            return _failure(CommitFailedError("Missing provider type"), data.intent)

        try:
            display_name = derive_display_name(data, identity)
            account = await self._db.ensure_account(identity.id, display_name)
            account_id = account["id"]

            if data.intent == Intent.PROVIDER:
                profile_id = await self._write_provider_profile(data, account_id)
            else:
                profile_id = await self._db.create_profile(build_family_record(data, account_id))

            await self._db.update_account(
                account_id,
                {
                    "onboarding_completed": True,
                    "active_profile_id": profile_id,
                    "display_name": account.get("display_name") or display_name,
                },
            )

            if data.intent == Intent.PROVIDER:
                await self._db.upsert_membership(account_id, plan="free", status="free")

            await self._drafts.release(discard=True)
        except (DomainException, CircuitBreakerError) as e:
            reason = getattr(e, "reason", None) or getattr(e, "message", None) or str(e)
            logger.error(
                "commit_failed",
                user_id=identity.id,
                intent=data.intent.value,
                error=reason,
                error_type=type(e).__name__,
            )
            return _failure(CommitFailedError(reason), data.intent)

        logger.info(
            "commit_succeeded",
            user_id=identity.id,
            account_id=account_id,
            profile_id=profile_id,
            intent=data.intent.value,
            claimed=data.is_claim,
        )
        return CommitResult(profile_id=profile_id, intent=data.intent)

    async def _write_provider_profile(self, data: FlowData, account_id: str) -> str:
        if data.is_claim:
            # Merge against the current row, not the snapshot taken when the
            # listing was selected
            current = ProfileSnapshot.model_validate(
                await self._db.get_profile(data.claimed_profile_id)
            )
            if current.claim_state not in (None, ClaimState.UNCLAIMED.value):
                logger.warning(
                    "claim_target_not_unclaimed",
                    profile_id=data.claimed_profile_id,
                    claim_state=current.claim_state,
                )
                raise CommitFailedError(LISTING_ALREADY_CLAIMED)
            try:
                await self._db.update_profile(
                    data.claimed_profile_id,
                    build_claim_update(current, data, account_id),
                    expected_claim_state=current.claim_state,
                )
            except ProfileNotFoundError:
                # Row changed hands between the read and the conditional write
                logger.warning("claim_lost_race", profile_id=data.claimed_profile_id)
                raise CommitFailedError(LISTING_ALREADY_CLAIMED)
            logger.info("profile_claimed", profile_id=data.claimed_profile_id, account_id=account_id)
            return data.claimed_profile_id
        return await self._db.create_profile(build_provider_record(data, account_id))
