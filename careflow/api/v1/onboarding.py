"""
Onboarding flow API endpoints.

Thin HTTP projection of the FlowController: every call returns the
operation's StepResult together with a fresh FlowView. Step failures come
back as typed results with status 200; only unknown flows, bad requests and
refused closes use HTTP error codes.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from careflow.api.dependencies import (
    FlowRegistry,
    get_auth_gateway,
    get_db_client,
    get_flow,
    get_flow_registry,
    get_redis_client,
)
from careflow.core.exceptions import ProfileNotFoundError
from careflow.domain.schemas import (
    AuthModeRequest,
    ClaimState,
    FlowPresets,
    FlowResponse,
    OpenFlowRequest,
    OrgSearchRequest,
    OrgSelectRequest,
    ProfileSnapshot,
    StepResult,
    SubmitStepRequest,
    UpdateFlowDataRequest,
)
from careflow.infrastructure.redis_client import RedisClient
from careflow.infrastructure.supabase_auth import SupabaseAuthGateway
from careflow.infrastructure.supabase_client import SupabaseClient
from careflow.services.onboarding import DraftStore, FlowController

router = APIRouter(prefix="/onboarding", tags=["Onboarding"])
logger = structlog.get_logger(__name__)


def _respond(controller: FlowController, result: StepResult) -> FlowResponse:
    return FlowResponse(result=result, view=controller.view())


async def _load_claim_profile(db: SupabaseClient, profile_id: str) -> ProfileSnapshot:
    try:
        profile = ProfileSnapshot.model_validate(await db.get_profile(profile_id))
    except ProfileNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Listing not found",
        )
    if profile.claim_state not in (None, ClaimState.UNCLAIMED.value):
        logger.info("claim_rejected_already_claimed", profile_id=profile_id)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This listing has already been claimed",
        )
    return profile


@router.post("/flows", response_model=FlowResponse, status_code=status.HTTP_201_CREATED)
async def open_flow(
    request: OpenFlowRequest,
    registry: FlowRegistry = Depends(get_flow_registry),
    db: SupabaseClient = Depends(get_db_client),
    gateway: SupabaseAuthGateway = Depends(get_auth_gateway),
    redis: RedisClient = Depends(get_redis_client),
):
    """
    Open a new onboarding flow.

    An authenticated caller opening a claim flow is committed immediately;
    the response then already carries the CommitResult.
    """
    claim_profile = None
    if request.claim_profile_id:
        claim_profile = await _load_claim_profile(db, request.claim_profile_id)

    presets = FlowPresets(
        intent=request.intent,
        provider_type=request.provider_type,
        claim_profile=claim_profile,
        default_to_sign_in=request.default_to_sign_in,
    )
    controller = FlowController(
        supabase_client=db,
        gateway=gateway,
        presets=presets,
        draft_store=DraftStore(redis=redis, scope=request.draft_scope),
    )
    result = await controller.open()
    registry.add(controller)
    return _respond(controller, result)


@router.get("/flows/{flow_id}", response_model=FlowResponse)
async def get_flow_view(controller: FlowController = Depends(get_flow)):
    return _respond(controller, StepResult(ok=True, step=controller.step))


@router.patch("/flows/{flow_id}/data", response_model=FlowResponse)
async def update_flow_data(
    request: UpdateFlowDataRequest,
    controller: FlowController = Depends(get_flow),
):
    result = await controller.update_data(request.data)
    return _respond(controller, result)


@router.post("/flows/{flow_id}/submit", response_model=FlowResponse)
async def submit_step(
    request: SubmitStepRequest,
    controller: FlowController = Depends(get_flow),
):
    """Submit the current step (code is only read on verify_code)."""
    result = await controller.submit(code=request.code)
    return _respond(controller, result)


@router.post("/flows/{flow_id}/back", response_model=FlowResponse)
async def go_back(controller: FlowController = Depends(get_flow)):
    result = controller.go_back()
    return _respond(controller, result)


@router.post("/flows/{flow_id}/auth-mode", response_model=FlowResponse)
async def set_auth_mode(
    request: AuthModeRequest,
    controller: FlowController = Depends(get_flow),
):
    result = controller.set_auth_mode(request.mode)
    return _respond(controller, result)


@router.post("/flows/{flow_id}/sign-in-code", response_model=FlowResponse)
async def send_sign_in_code(controller: FlowController = Depends(get_flow)):
    result = await controller.send_sign_in_code()
    return _respond(controller, result)


@router.post("/flows/{flow_id}/resend", response_model=FlowResponse)
async def resend_code(controller: FlowController = Depends(get_flow)):
    result = await controller.resend_code()
    return _respond(controller, result)


@router.post("/flows/{flow_id}/org-search", response_model=FlowResponse)
async def search_organizations(
    request: OrgSearchRequest,
    controller: FlowController = Depends(get_flow),
):
    result = await controller.search_organizations(request.query)
    return _respond(controller, result)


@router.post("/flows/{flow_id}/org-select", response_model=FlowResponse)
async def select_organization(
    request: OrgSelectRequest,
    controller: FlowController = Depends(get_flow),
):
    result = await controller.select_organization(request.profile_id)
    return _respond(controller, result)


@router.delete("/flows/{flow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def close_flow(
    discard_draft: bool = False,
    controller: FlowController = Depends(get_flow),
    registry: FlowRegistry = Depends(get_flow_registry),
):
    """
    Close a flow. The draft is kept unless discard_draft is set.
    """
    closed = await controller.close(discard_draft=discard_draft)
    if not closed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Your profile is being set up. Please wait.",
        )
    registry.remove(controller.flow_id)
