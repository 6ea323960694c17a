import time
from typing import Callable, Dict, Optional, Tuple

import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from careflow.core.config import settings
from careflow.infrastructure.redis_client import RedisClient, redis_client
from careflow.infrastructure.supabase_auth import SupabaseAuthGateway
from careflow.infrastructure.supabase_client import SupabaseClient, get_supabase_client
from careflow.services.onboarding import FlowController

logger = structlog.get_logger()

# Onboarding is reachable signed-out; a bearer token only marks the caller
# as already authenticated
optional_bearer_scheme = HTTPBearer(auto_error=False)


class FlowRegistry:
    """
    In-process map of open flows keyed by flow id.

    Flows untouched for longer than the TTL are dropped on the next access;
    their drafts stay in Redis for resumption.
    """

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds or settings.flow_registry_ttl_seconds
        self._clock = clock
        self._flows: Dict[str, Tuple[FlowController, float]] = {}

    def __len__(self) -> int:
        return len(self._flows)

    def add(self, controller: FlowController) -> None:
        self._evict_expired()
        self._flows[controller.flow_id] = (controller, self._clock())

    def get(self, flow_id: str) -> Optional[FlowController]:
        self._evict_expired()
        entry = self._flows.get(flow_id)
        if entry is None:
            return None
        controller, _ = entry
        self._flows[flow_id] = (controller, self._clock())
        return controller

    def remove(self, flow_id: str) -> None:
        self._flows.pop(flow_id, None)

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [
            flow_id
            for flow_id, (controller, touched) in self._flows.items()
            if now - touched > self._ttl and not controller.submitting
        ]
        for flow_id in expired:
            del self._flows[flow_id]
            logger.info("flow_evicted", flow_id=flow_id)


flow_registry = FlowRegistry()


def get_flow_registry() -> FlowRegistry:
    return flow_registry


def get_redis_client() -> RedisClient:
    return redis_client


def get_db_client() -> SupabaseClient:
    return get_supabase_client()


def get_auth_gateway(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_bearer_scheme),
) -> SupabaseAuthGateway:
    """
    Identity gateway for a new flow, carrying the caller's session if present.
    """
    return SupabaseAuthGateway(access_token=credentials.credentials if credentials else None)


async def get_flow(
    flow_id: str,
    registry: FlowRegistry = Depends(get_flow_registry),
) -> FlowController:
    """
    Dependency resolving an open flow from the path
    """
    controller = registry.get(flow_id)
    if controller is None or not controller.is_open:
        logger.info("flow_not_found", flow_id=flow_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Onboarding flow not found or expired",
        )
    return controller
