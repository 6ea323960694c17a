from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Intent(str, Enum):
    FAMILY = "family"
    PROVIDER = "provider"


class ProviderType(str, Enum):
    ORGANIZATION = "organization"
    CAREGIVER = "caregiver"


class FlowStep(str, Enum):
    INTENT = "intent"
    PROVIDER_TYPE = "provider_type"
    PROVIDER_INFO = "provider_info"
    ORG_SEARCH = "org_search"
    FAMILY_INFO = "family_info"
    FAMILY_NEEDS = "family_needs"
    AUTH = "auth"
    VERIFY_CODE = "verify_code"


class Terminal(str, Enum):
    """Marker returned by the step graph when the flow is ready to commit."""

    COMMIT = "committing"


AUTH_STEPS = frozenset({FlowStep.AUTH, FlowStep.VERIFY_CODE})


class AuthMode(str, Enum):
    SIGN_UP = "sign_up"
    SIGN_IN = "sign_in"


class ProfileType(str, Enum):
    ORGANIZATION = "organization"
    CAREGIVER = "caregiver"
    FAMILY = "family"


class ClaimState(str, Enum):
    UNCLAIMED = "unclaimed"
    PENDING = "pending"
    CLAIMED = "claimed"


class ProfileCategory(str, Enum):
    ASSISTED_LIVING = "assisted_living"
    INDEPENDENT_LIVING = "independent_living"
    MEMORY_CARE = "memory_care"
    NURSING_HOME = "nursing_home"
    HOME_CARE_AGENCY = "home_care_agency"
    HOME_HEALTH_AGENCY = "home_health_agency"
    HOSPICE_AGENCY = "hospice_agency"
    REHAB_FACILITY = "rehab_facility"
    ADULT_DAY_CARE = "adult_day_care"
    WELLNESS_CENTER = "wellness_center"


CARE_TYPES: List[str] = [
    "Assisted Living",
    "Memory Care",
    "Independent Living",
    "Skilled Nursing",
    "Home Care",
    "Home Health",
    "Hospice",
    "Respite Care",
    "Adult Day Care",
    "Rehabilitation",
]


class ProfileSnapshot(BaseModel):
    """The slice of a business_profiles row the onboarding engine reads."""

    model_config = ConfigDict(extra="ignore")

    id: str
    slug: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None
    display_name: Optional[str] = None
    description: Optional[str] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    care_types: List[str] = Field(default_factory=list)
    claim_state: Optional[str] = None


class FlowData(BaseModel):
    """
    Answers accumulated across the steps of one flow.

    Immutable: every update produces a new instance via merge().
    """

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    # Auth data
    email: str = ""
    password: str = ""
    display_name: str = ""

    # Branch selectors
    intent: Optional[Intent] = None
    provider_type: Optional[ProviderType] = None

    # Provider data
    org_name: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    category: Optional[ProfileCategory] = None
    care_types: List[str] = Field(default_factory=list)
    description: str = ""
    phone: str = ""
    visible_to_families: bool = True
    visible_to_providers: bool = True

    # Family data
    care_recipient_name: str = ""
    care_recipient_relation: str = ""
    care_needs: List[str] = Field(default_factory=list)

    # Claim data
    claimed_profile_id: Optional[str] = None
    claimed_profile: Optional[ProfileSnapshot] = None

    def merge(self, partial: Dict[str, Any]) -> "FlowData":
        """Return a new FlowData with partial applied on top (later keys win)."""
        unknown = set(partial) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown flow fields: {sorted(unknown)}")
        return type(self).model_validate({**self.model_dump(), **partial})

    @property
    def is_claim(self) -> bool:
        return bool(self.claimed_profile_id and self.claimed_profile)

    @classmethod
    def from_claim_profile(cls, profile: ProfileSnapshot) -> "FlowData":
        """Pre-populate a claim flow from the listing being claimed."""
        return cls(
            intent=Intent.PROVIDER,
            provider_type=ProviderType.ORGANIZATION,
            org_name=profile.display_name or "",
            city=profile.city or "",
            state=profile.state or "",
            zip=profile.zip or "",
            care_types=list(profile.care_types or []),
            category=profile.category,
            description=profile.description or "",
            phone=profile.phone or "",
            claimed_profile_id=profile.id,
            claimed_profile=profile,
        )


# Fields never written to the draft store
DRAFT_EXCLUDED_FIELDS = frozenset({"email", "password", "claimed_profile_id", "claimed_profile"})

# Listing linkage, set only by listing selection or a claim preset
CONTROLLER_ONLY_FIELDS = frozenset({"claimed_profile_id", "claimed_profile"})

# Branch selectors and the one step allowed to change each
BRANCH_FIELD_STEPS = {"intent": FlowStep.INTENT, "provider_type": FlowStep.PROVIDER_TYPE}


class DraftSnapshot(BaseModel):
    """Persisted, non-sensitive projection of FlowData."""

    model_config = ConfigDict(extra="ignore")

    data: Dict[str, Any]
    timestamp: datetime

    @classmethod
    def from_flow_data(cls, data: FlowData, now: Optional[datetime] = None) -> "DraftSnapshot":
        return cls(
            data=data.model_dump(mode="json", exclude=set(DRAFT_EXCLUDED_FIELDS)),
            timestamp=now or datetime.now(timezone.utc),
        )

    def restorable_fields(self) -> Dict[str, Any]:
        """Draft data with any excluded or unknown key dropped."""
        known = set(FlowData.model_fields) - DRAFT_EXCLUDED_FIELDS
        return {k: v for k, v in self.data.items() if k in known}


class FlowPresets(BaseModel):
    """Caller-supplied configuration for one flow invocation."""

    model_config = ConfigDict(frozen=True)

    intent: Optional[Intent] = None
    provider_type: Optional[ProviderType] = None
    claim_profile: Optional[ProfileSnapshot] = None
    default_to_sign_in: bool = False


class FlowProgress(BaseModel):
    step_number: int
    total_steps: int


class Identity(BaseModel):
    id: str
    email: Optional[str] = None
    user_metadata: Dict[str, Any] = Field(default_factory=dict)


class AuthOutcome(BaseModel):
    """Result of a sign-up / sign-in call against the identity provider."""

    user_id: Optional[str] = None
    requires_verification: bool = False


class CommitResult(BaseModel):
    profile_id: Optional[str] = None
    intent: Optional[Intent] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.profile_id is not None and self.error_code is None


class StepResult(BaseModel):
    """Outcome of a controller operation, returned instead of raising."""

    ok: bool
    step: Union[FlowStep, Terminal, str]
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    field_errors: Dict[str, str] = Field(default_factory=dict)
    commit: Optional[CommitResult] = None
    ignored: bool = False


class FlowView(BaseModel):
    """Everything the presentation layer needs to render the current step."""

    flow_id: str
    step: str
    title: str
    progress: FlowProgress
    show_progress: bool
    can_go_back: bool
    auth_mode: AuthMode
    submitting: bool
    resend_cooldown_seconds: int
    otp_code: str = ""
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    search_results: List[ProfileSnapshot] = Field(default_factory=list)
    selected_profile_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[CommitResult] = None


# ============ HTTP request / response models ============


class OpenFlowRequest(BaseModel):
    intent: Optional[Intent] = None
    provider_type: Optional[ProviderType] = None
    claim_profile_id: Optional[str] = None
    default_to_sign_in: bool = False
    draft_scope: Optional[str] = Field(default=None, max_length=128)


class UpdateFlowDataRequest(BaseModel):
    data: Dict[str, Any]


class SubmitStepRequest(BaseModel):
    code: Optional[str] = None


class AuthModeRequest(BaseModel):
    mode: AuthMode


class OrgSearchRequest(BaseModel):
    query: Optional[str] = Field(default=None, max_length=200)


class OrgSelectRequest(BaseModel):
    profile_id: Optional[str] = None


class FlowResponse(BaseModel):
    result: StepResult
    view: FlowView
