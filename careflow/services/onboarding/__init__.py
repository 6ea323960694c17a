from careflow.services.onboarding.commit_orchestrator import CommitOrchestrator
from careflow.services.onboarding.draft_store import DraftStore
from careflow.services.onboarding.flow_controller import FlowController, FlowNotOpenError

__all__ = [
    "CommitOrchestrator",
    "DraftStore",
    "FlowController",
    "FlowNotOpenError",
]
