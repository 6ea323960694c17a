from typing import Any, Dict, List, Optional

import structlog  # type: ignore[import-not-found]
from careflow.core.config import settings
from careflow.core.exceptions import ProfileNotFoundError, SupabaseError
from pybreaker import CircuitBreaker  # type: ignore[import-not-found]
from tenacity import retry  # type: ignore[import-not-found]
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential

import supabase  # type: ignore[import-not-found]

logger = structlog.get_logger()

# Circuit breaker for Supabase calls
supabase_breaker = CircuitBreaker(fail_max=5, reset_timeout=60)

# Reads are idempotent and retried; writes never are (the flow re-enables
# submit instead, so the user decides whether to try again).
_retry_reads = retry(
    retry=retry_if_exception_type(SupabaseError),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    stop=stop_after_attempt(3),
    reraise=True,
)


def build_client_options() -> Any:
    """ClientOptions without token refresh or session persistence."""
    if not hasattr(supabase, "ClientOptions"):
        return None
    return supabase.ClientOptions(  # type: ignore[attr-defined]
        auto_refresh_token=False,
        persist_session=False,
    )


class SupabaseClient:
    """
    Service-role access to the account, profile and membership tables.

    Row-level permissioning is the database's concern; this client bypasses
    RLS and is only used from the commit path and organization search.
    """

    def __init__(self, client: Optional[Any] = None):
        self.client: Any = client or supabase.create_client(  # type: ignore[attr-defined]
            settings.supabase_url, settings.supabase_service_key, options=build_client_options()
        )

    # ============ ACCOUNTS ============

    @supabase_breaker
    @_retry_reads
    async def get_account_by_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Account row owned by an auth user, or None."""
        try:
            response = (
                self.client.table("accounts")
                .select("*")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error("get_account_error", user_id=user_id, error=str(e))
            raise SupabaseError(f"Failed to fetch account: {str(e)}")

    @supabase_breaker
    async def create_account(self, user_id: str, display_name: str) -> Dict[str, Any]:
        try:
            response = (
                self.client.table("accounts")
                .insert({"user_id": user_id, "display_name": display_name or None})
                .execute()
            )
            if not response.data:
                raise SupabaseError("Account insert returned no row")
            account = response.data[0]
            logger.info("account_created", user_id=user_id, account_id=account.get("id"))
            return account
        except SupabaseError:
            raise
        except Exception as e:
            logger.error("create_account_error", user_id=user_id, error=str(e))
            raise SupabaseError(f"Failed to set up account: {str(e)}")

    async def ensure_account(self, user_id: str, display_name: str) -> Dict[str, Any]:
        """Return the user's account, creating it if absent. Safe to call repeatedly."""
        account = await self.get_account_by_user(user_id)
        if account:
            return account
        return await self.create_account(user_id, display_name)

    @supabase_breaker
    async def update_account(self, account_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = (
                self.client.table("accounts")
                .update(updates)
                .eq("id", account_id)
                .execute()
            )
            logger.info("account_updated", account_id=account_id, updates=list(updates.keys()))
            if response.data:
                return response.data[0]
            raise SupabaseError(f"Account not found or update failed: {account_id}")
        except SupabaseError:
            raise
        except Exception as e:
            logger.error("update_account_error", account_id=account_id, error=str(e))
            raise SupabaseError(f"Failed to update account: {str(e)}")

    # ============ BUSINESS PROFILES ============

    @supabase_breaker
    @_retry_reads
    async def get_profile(self, profile_id: str) -> Dict[str, Any]:
        """Get a business profile by ID. Raises ProfileNotFoundError if not found."""
        try:
            response = (
                self.client.table("business_profiles")
                .select("*")
                .eq("id", profile_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error("get_profile_error", profile_id=profile_id, error=str(e))
            raise SupabaseError(f"Failed to fetch profile: {str(e)}")
        if not response.data:
            raise ProfileNotFoundError(f"Profile not found: {profile_id}")
        return response.data[0]

    @supabase_breaker
    async def create_profile(self, record: Dict[str, Any]) -> str:
        """Insert a business profile and return its id."""
        try:
            response = self.client.table("business_profiles").insert(record).execute()
            if not response.data:
                raise SupabaseError("Profile insert returned no row")
            profile_id = response.data[0]["id"]
            logger.info(
                "profile_created",
                profile_id=profile_id,
                account_id=record.get("account_id"),
                type=record.get("type"),
            )
            return profile_id
        except SupabaseError:
            raise
        except Exception as e:
            logger.error("create_profile_error", account_id=record.get("account_id"), error=str(e))
            raise SupabaseError(f"Failed to create profile: {str(e)}")

    @supabase_breaker
    async def update_profile(
        self,
        profile_id: str,
        updates: Dict[str, Any],
        expected_claim_state: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Update a business profile by id. Raises ProfileNotFoundError if no row matched.

        With expected_claim_state the write only applies while the row still
        has that claim_state.
        """
        try:
            request = self.client.table("business_profiles").update(updates).eq("id", profile_id)
            if expected_claim_state is not None:
                request = request.eq("claim_state", expected_claim_state)
            response = request.execute()
        except Exception as e:
            logger.error("update_profile_error", profile_id=profile_id, error=str(e))
            raise SupabaseError(f"Failed to update profile: {str(e)}")
        logger.info("profile_updated", profile_id=profile_id, updates=list(updates.keys()))
        if response.data:
            return response.data[0]
        raise ProfileNotFoundError(f"Profile not found or update failed: {profile_id}")

    @supabase_breaker
    @_retry_reads
    async def search_unclaimed_organizations(
        self, query: str, state: Optional[str] = None, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Unclaimed organization listings whose name contains query.

        Args:
            query: Name fragment (case-insensitive)
            state: Optional state filter to reduce noise
            limit: Max rows (defaults to settings.org_search_limit)
        """
        if not query.strip():
            return []
        try:
            request = (
                self.client.table("business_profiles")
                .select("*")
                .eq("type", "organization")
                .eq("claim_state", "unclaimed")
                .ilike("display_name", f"%{query.strip()}%")
            )
            if state and state.strip():
                request = request.ilike("state", state.strip())
            response = request.limit(limit or settings.org_search_limit).execute()
            return response.data or []
        except Exception as e:
            logger.error("org_search_error", query=query, error=str(e))
            raise SupabaseError(f"Organization search failed: {str(e)}")

    # ============ MEMBERSHIPS ============

    @supabase_breaker
    async def upsert_membership(
        self, account_id: str, plan: str = "free", status: str = "free"
    ) -> None:
        """Create the account's membership row, or leave it as-is if it exists."""
        try:
            self.client.table("memberships").upsert(
                {"account_id": account_id, "plan": plan, "status": status},
                on_conflict="account_id",
                ignore_duplicates=True,
            ).execute()
            logger.info("membership_upserted", account_id=account_id, plan=plan)
        except Exception as e:
            logger.error("upsert_membership_error", account_id=account_id, error=str(e))
            raise SupabaseError(f"Failed to create membership: {str(e)}")


_supabase_client: Optional[SupabaseClient] = None


def get_supabase_client() -> SupabaseClient:
    """Lazily created process-wide service client."""
    global _supabase_client
    if _supabase_client is None:
        _supabase_client = SupabaseClient()
    return _supabase_client
