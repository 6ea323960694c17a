"""
Draft persistence for in-progress onboarding flows.

A draft is the non-sensitive projection of FlowData plus a timestamp,
stored as one JSON blob in Redis. The store is a scoped resource: the
FlowController acquires it on open and releases it on commit or discard.
Every operation is best-effort and never raises into the flow.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from careflow.core.config import settings
from careflow.domain.schemas import DraftSnapshot, FlowData, Intent
from careflow.infrastructure.redis_client import RedisClient, redis_client

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DraftStore:
    def __init__(
        self,
        redis: Optional[RedisClient] = None,
        scope: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            redis: Key/value backend (process-wide client by default)
            scope: Key scope; one draft can be resident per scope
            ttl_seconds: Validity window (settings.draft_ttl_seconds by default)
            clock: Returns the current UTC time
        """
        self._redis = redis or redis_client
        self.key = f"{settings.draft_key}:{scope or settings.draft_scope}"
        self.ttl = timedelta(seconds=ttl_seconds or settings.draft_ttl_seconds)
        self._clock = clock
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> "DraftStore":
        self._held = True
        return self

    async def release(self, discard: bool = True) -> None:
        """Give the draft back; with discard, the stored blob is deleted too."""
        if discard:
            await self._redis.delete(self.key)
            logger.info("draft_discarded", key=self.key)
        self._held = False

    async def save(self, data: FlowData) -> bool:
        """Write the filtered snapshot. Returns False when not written."""
        if not self._held:
            return False
        snapshot = DraftSnapshot.from_flow_data(data, now=self._clock())
        written = await self._redis.set(
            self.key,
            snapshot.model_dump(mode="json"),
            expire=int(self.ttl.total_seconds()),
        )
        if not written:
            logger.debug("draft_write_skipped", key=self.key)
        return written

    async def load(self, preset_intent: Optional[Intent] = None) -> Optional[Dict[str, Any]]:
        """
        Restorable draft fields, or None.

        Malformed, stale and cross-intent drafts are deleted and ignored.
        The step is never part of a draft.
        """
        raw = await self._redis.get(self.key)
        if raw is None:
            # get() reports undecodable values as missing
            if await self._redis.exists(self.key):
                logger.info("draft_discarded_undecodable", key=self.key)
                await self._redis.delete(self.key)
            return None

        try:
            snapshot = DraftSnapshot.model_validate(raw)
            fields = snapshot.restorable_fields()
            FlowData().merge(fields)
        except (PydanticValidationError, ValueError, TypeError) as e:
            logger.info("draft_discarded_malformed", key=self.key, error=str(e))
            await self._redis.delete(self.key)
            return None

        timestamp = snapshot.timestamp
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        age = self._clock() - timestamp
        if age >= self.ttl:
            logger.info("draft_discarded_stale", key=self.key, age_seconds=int(age.total_seconds()))
            await self._redis.delete(self.key)
            return None

        if preset_intent is not None and fields.get("intent") != preset_intent.value:
            logger.info(
                "draft_discarded_intent_conflict",
                key=self.key,
                preset_intent=preset_intent.value,
                draft_intent=fields.get("intent"),
            )
            await self._redis.delete(self.key)
            return None

        logger.info("draft_restored", key=self.key, fields=sorted(fields))
        return fields
