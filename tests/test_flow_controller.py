"""End-to-end flow scenarios against FlowController with mocked backends."""

import asyncio

import pytest

from careflow.core.exceptions import (
    CodeInvalidError,
    DuplicateIdentityError,
    SupabaseError,
)
from careflow.domain.schemas import (
    AuthMode,
    AuthOutcome,
    FlowData,
    FlowPresets,
    Intent,
    ProviderType,
)
from careflow.services.onboarding.draft_store import DraftStore
from careflow.services.onboarding.flow_controller import FlowController

CODE = "AB12CD34"


@pytest.fixture
def make_controller(mock_db, mock_gateway, draft_store, clock):
    def _make(**presets):
        return FlowController(
            mock_db,
            mock_gateway,
            presets=FlowPresets(**presets),
            draft_store=draft_store,
            flow_id="flow-1",
            clock=clock,
        )

    return _make


async def family_at_auth(controller):
    await controller.open()
    await controller.update_data({"display_name": "Pat", "city": "Austin"})
    await controller.submit()
    await controller.update_data({"care_needs": ["Memory Care"]})
    await controller.submit()
    await controller.update_data({"email": "pat@example.com", "password": "longenough1"})
    assert controller.step == "auth"


async def test_fresh_family_flow(make_controller, mock_db, mock_gateway, identity, fake_redis):
    controller = make_controller()
    result = await controller.open()
    assert result.step == "intent"
    assert not controller.view().show_progress

    result = await controller.choose_intent(Intent.FAMILY)
    assert result.ok and result.step == "family_info"
    view = controller.view()
    assert (view.progress.step_number, view.progress.total_steps) == (1, 3)
    assert view.can_go_back

    await controller.update_data({"display_name": "Pat", "city": "Austin"})
    assert (await controller.submit()).step == "family_needs"
    await controller.update_data({"care_needs": ["Memory Care"]})
    assert (await controller.submit()).step == "auth"

    await controller.update_data({"email": "pat@example.com", "password": "longenough1"})
    draft = await fake_redis.get("onboarding_progress:test")
    assert "email" not in draft["data"] and "password" not in draft["data"]

    mock_gateway.sign_up.return_value = AuthOutcome(user_id="user-1", requires_verification=True)
    result = await controller.submit()
    assert result.step == "verify_code"
    mock_gateway.send_verification_code.assert_awaited_once_with("pat@example.com")
    assert controller.data.password == ""
    assert controller.resend_cooldown_remaining == 30

    mock_gateway.verify_code.return_value = identity
    mock_gateway.current_user.return_value = identity
    result = await controller.submit(code=CODE)

    assert result.ok
    assert result.step == "complete"
    assert result.commit.profile_id == "profile-new"
    assert result.commit.intent == Intent.FAMILY
    mock_gateway.verify_code.assert_awaited_once_with("pat@example.com", CODE)
    assert mock_db.create_profile.await_args.args[0]["type"] == "family"
    assert fake_redis.store == {}


async def test_org_claim_with_code_verification(
    make_controller, mock_db, mock_gateway, identity, sunrise_listing
):
    mock_db.get_profile.return_value = sunrise_listing.model_dump()
    controller = make_controller(claim_profile=sunrise_listing)

    result = await controller.open()
    assert result.step == "auth"
    view = controller.view()
    assert not view.can_go_back
    assert view.data["org_name"] == "Sunrise Care"
    assert (view.progress.step_number, view.progress.total_steps) == (4, 4)

    await controller.update_data({"email": "owner@sunrise.example", "password": "longenough1"})
    mock_gateway.sign_up.return_value = AuthOutcome(user_id="user-1", requires_verification=True)
    assert (await controller.submit()).step == "verify_code"

    mock_gateway.verify_code.return_value = identity
    mock_gateway.current_user.return_value = identity
    result = await controller.submit(code=CODE)

    assert result.ok and result.commit.profile_id == "profile-sunrise"
    update = mock_db.update_profile.await_args.args[1]
    assert "city" not in update
    assert update["claim_state"] == "pending"
    mock_db.create_profile.assert_not_awaited()
    mock_db.upsert_membership.assert_awaited_once()


async def test_wrong_code_stays_on_verify_code_with_cleared_code(make_controller, mock_gateway):
    controller = make_controller(intent=Intent.FAMILY)
    await family_at_auth(controller)
    mock_gateway.sign_up.return_value = AuthOutcome(user_id="user-1", requires_verification=True)
    await controller.submit()

    mock_gateway.verify_code.side_effect = CodeInvalidError()
    result = await controller.submit(code="WRONG123")

    assert not result.ok
    assert result.step == "verify_code"
    assert result.error_code == "CODE_INVALID"
    view = controller.view()
    assert view.otp_code == ""
    assert view.error_message == "Invalid code. Please check and try again."


async def test_double_submit_calls_gateway_once(make_controller, mock_db, mock_gateway, identity):
    controller = make_controller(intent=Intent.FAMILY)
    await family_at_auth(controller)

    release = asyncio.Event()

    async def slow_sign_up(*args, **kwargs):
        await release.wait()
        return AuthOutcome(user_id="user-1", requires_verification=False)

    mock_gateway.sign_up.side_effect = slow_sign_up
    mock_gateway.current_user.return_value = identity

    first = asyncio.create_task(controller.submit())
    await asyncio.sleep(0)
    assert controller.view().submitting

    second = await controller.submit()
    assert second.ignored

    release.set()
    result = await first
    assert result.ok
    assert mock_gateway.sign_up.await_count == 1
    assert mock_db.ensure_account.await_count == 1


async def test_resend_cooldown(make_controller, mock_gateway, clock):
    controller = make_controller(intent=Intent.FAMILY)
    await family_at_auth(controller)
    mock_gateway.sign_up.return_value = AuthOutcome(user_id="user-1", requires_verification=True)
    await controller.submit()
    controller.set_code("AB12")

    result = await controller.resend_code()
    assert result.error_code == "RESEND_COOLDOWN"
    assert mock_gateway.send_verification_code.await_count == 1

    clock.advance(30)
    result = await controller.resend_code()
    assert result.ok
    assert mock_gateway.send_verification_code.await_count == 2
    assert controller.otp_code == ""
    assert controller.resend_cooldown_remaining == 60

    clock.advance(59)
    assert (await controller.resend_code()).error_code == "RESEND_COOLDOWN"


async def test_failed_code_send_after_sign_up_still_moves_to_verify(make_controller, mock_gateway):
    controller = make_controller(intent=Intent.FAMILY)
    await family_at_auth(controller)
    mock_gateway.sign_up.return_value = AuthOutcome(user_id="user-1", requires_verification=True)
    mock_gateway.send_verification_code.side_effect = SupabaseError("smtp down")

    result = await controller.submit()
    assert result.ok and result.step == "verify_code"


async def test_sign_in_commits_without_verification(make_controller, mock_gateway, identity):
    controller = make_controller(intent=Intent.FAMILY, default_to_sign_in=True)
    await family_at_auth(controller)
    assert controller.auth_mode == AuthMode.SIGN_IN
    assert controller.view().title == "Welcome back"

    mock_gateway.sign_in.return_value = AuthOutcome(user_id="user-1")
    mock_gateway.current_user.return_value = identity
    result = await controller.submit()

    assert result.step == "complete"
    mock_gateway.sign_up.assert_not_awaited()


async def test_sign_in_by_emailed_code(make_controller, mock_gateway, identity):
    controller = make_controller(intent=Intent.FAMILY)
    await family_at_auth(controller)
    controller.set_auth_mode(AuthMode.SIGN_IN)

    result = await controller.send_sign_in_code()
    assert result.step == "verify_code"
    mock_gateway.send_verification_code.assert_awaited_once_with("pat@example.com")

    mock_gateway.verify_code.return_value = identity
    mock_gateway.current_user.return_value = identity
    assert (await controller.submit(code=CODE)).step == "complete"


async def test_duplicate_sign_up_is_reported(make_controller, mock_gateway):
    controller = make_controller(intent=Intent.FAMILY)
    await family_at_auth(controller)
    mock_gateway.sign_up.side_effect = DuplicateIdentityError()

    result = await controller.submit()

    assert result.step == "auth"
    assert result.error_code == "DUPLICATE_IDENTITY"
    assert result.error_message == "This email is already registered. Try signing in instead."


async def test_validation_blocks_step_without_network(make_controller, mock_gateway, mock_db):
    controller = make_controller(intent=Intent.PROVIDER, provider_type=ProviderType.ORGANIZATION)
    await controller.open()

    result = await controller.submit()

    assert result.error_code == "VALIDATION_ERROR"
    assert "org_name" in result.field_errors
    assert controller.step == "provider_info"
    mock_db.search_unclaimed_organizations.assert_not_awaited()


async def test_failed_commit_can_be_retried(make_controller, mock_db, mock_gateway, identity):
    controller = make_controller(intent=Intent.FAMILY)
    await family_at_auth(controller)
    mock_gateway.sign_in.return_value = AuthOutcome(user_id="user-1")
    mock_gateway.current_user.return_value = identity
    mock_db.create_profile.side_effect = [SupabaseError("insert failed"), "profile-new"]
    controller.set_auth_mode(AuthMode.SIGN_IN)

    result = await controller.submit()
    assert result.error_code == "COMMIT_FAILED"
    assert result.step == "committing"
    assert not controller.view().submitting

    result = await controller.submit()
    assert result.ok and result.step == "complete"


async def test_authenticated_claim_auto_completes_once(
    make_controller, mock_db, mock_gateway, identity, sunrise_listing
):
    mock_gateway.current_user.return_value = identity
    mock_db.get_profile.return_value = sunrise_listing.model_dump()
    controller = make_controller(claim_profile=sunrise_listing)

    result = await controller.open()
    assert result.ok and result.step == "complete"

    await controller.open()
    assert mock_db.update_profile.await_count == 1
    mock_gateway.sign_up.assert_not_awaited()


async def test_close_refused_while_committing(make_controller, mock_db, mock_gateway, identity, fake_redis):
    controller = make_controller(intent=Intent.FAMILY)
    await family_at_auth(controller)
    controller.set_auth_mode(AuthMode.SIGN_IN)
    mock_gateway.sign_in.return_value = AuthOutcome(user_id="user-1")
    mock_gateway.current_user.return_value = identity

    release = asyncio.Event()

    async def slow_create(record):
        await release.wait()
        return "profile-new"

    mock_db.create_profile.side_effect = slow_create
    task = asyncio.create_task(controller.submit())
    await asyncio.sleep(0)

    assert await controller.close() is False
    release.set()
    assert (await task).step == "complete"
    assert await controller.close() is True
    assert not controller.is_open


async def test_close_keeps_draft_for_resume(make_controller, fake_redis):
    controller = make_controller(intent=Intent.FAMILY)
    await controller.open()
    await controller.update_data({"display_name": "Pat"})

    await controller.close()

    assert "onboarding_progress:test" in fake_redis.store
    reopened = make_controller(intent=Intent.FAMILY)
    await reopened.open()
    assert reopened.data.display_name == "Pat"
    assert reopened.step == "family_info"


async def test_cross_intent_draft_not_restored(make_controller, fake_redis, draft_now):
    writer = DraftStore(redis=fake_redis, scope="test", clock=lambda: draft_now).acquire()
    await writer.save(FlowData(intent=Intent.FAMILY, display_name="Pat"))

    controller = make_controller(intent=Intent.PROVIDER)
    await controller.open()

    assert controller.data.display_name == ""
    assert controller.data.intent == Intent.PROVIDER
    assert fake_redis.store == {}


async def test_go_back_from_verify_code_clears_code(make_controller, mock_gateway):
    controller = make_controller(intent=Intent.FAMILY)
    await family_at_auth(controller)
    mock_gateway.sign_up.return_value = AuthOutcome(user_id="user-1", requires_verification=True)
    await controller.submit()
    controller.set_code("AB12")

    result = controller.go_back()

    assert result.step == "auth"
    assert controller.otp_code == ""


async def test_org_search_and_select(make_controller, mock_db, sunrise_listing):
    mock_db.search_unclaimed_organizations.return_value = [sunrise_listing.model_dump()]
    controller = make_controller(intent=Intent.PROVIDER, provider_type=ProviderType.ORGANIZATION)
    await controller.open()
    await controller.update_data(
        {"org_name": "Sunrise", "state": "TX", "care_types": ["Hospice"], "phone": "555-0100"}
    )
    assert (await controller.submit()).step == "org_search"

    await controller.search_organizations()
    mock_db.search_unclaimed_organizations.assert_awaited_once_with("Sunrise", state="TX")
    assert [p.id for p in controller.view().search_results] == ["profile-sunrise"]

    await controller.select_organization("profile-sunrise")
    assert controller.data.is_claim
    assert controller.view().selected_profile_id == "profile-sunrise"

    assert (await controller.select_organization("unknown")).error_code == "VALIDATION_ERROR"
    assert (await controller.submit()).step == "auth"


async def test_claim_linkage_cannot_be_set_through_data_update(
    make_controller, mock_db, mock_gateway, identity, sunrise_listing
):
    mock_gateway.current_user.return_value = identity
    controller = make_controller(intent=Intent.PROVIDER, provider_type=ProviderType.ORGANIZATION)
    await controller.open()

    result = await controller.update_data(
        {"claimed_profile_id": "profile-sunrise", "claimed_profile": sunrise_listing.model_dump()}
    )

    assert result.error_code == "VALIDATION_ERROR"
    assert controller.data.claimed_profile_id is None
    assert not controller.data.is_claim

    await controller.update_data(
        {"org_name": "Sunrise", "state": "TX", "care_types": ["Hospice"], "phone": "555-0100"}
    )
    await controller.submit()
    result = await controller.submit()
    assert result.step == "complete"
    mock_db.update_profile.assert_not_awaited()
    mock_db.create_profile.assert_awaited_once()


async def test_listing_claimed_after_selection_fails_commit(
    make_controller, mock_db, mock_gateway, identity, sunrise_listing
):
    mock_gateway.current_user.return_value = identity
    mock_db.search_unclaimed_organizations.return_value = [sunrise_listing.model_dump()]
    mock_db.get_profile.return_value = {**sunrise_listing.model_dump(), "claim_state": "claimed"}
    controller = make_controller(intent=Intent.PROVIDER, provider_type=ProviderType.ORGANIZATION)
    await controller.open()
    await controller.update_data(
        {"org_name": "Sunrise", "state": "TX", "care_types": ["Hospice"], "phone": "555-0100"}
    )
    await controller.submit()
    await controller.search_organizations()
    await controller.select_organization("profile-sunrise")

    result = await controller.submit()

    assert result.error_code == "COMMIT_FAILED"
    assert result.error_message == "Something went wrong: This listing has already been claimed"
    assert result.step == "committing"
    mock_db.update_profile.assert_not_awaited()


async def test_intent_locked_once_past_intent_step(make_controller, mock_db, mock_gateway, identity):
    mock_gateway.current_user.return_value = identity
    controller = make_controller(intent=Intent.FAMILY)
    await controller.open()
    await controller.update_data({"display_name": "Jane"})
    assert (await controller.submit()).step == "family_needs"

    result = await controller.update_data({"intent": "provider"})

    assert result.error_code == "VALIDATION_ERROR"
    assert "intent" in result.field_errors
    assert controller.data.intent == Intent.FAMILY
    assert (await controller.update_data({"intent": "family"})).ok

    result = await controller.submit()
    assert result.step == "complete"
    assert result.commit.intent == Intent.FAMILY
    assert mock_db.create_profile.await_args.args[0]["type"] == "family"


async def test_provider_type_locked_outside_its_step(make_controller):
    controller = make_controller(intent=Intent.PROVIDER, provider_type=ProviderType.ORGANIZATION)
    await controller.open()

    result = await controller.update_data({"provider_type": "caregiver"})

    assert result.error_code == "VALIDATION_ERROR"
    assert controller.data.provider_type == ProviderType.ORGANIZATION


async def test_branch_switch_after_going_back_to_intent(make_controller):
    controller = make_controller()
    await controller.open()
    await controller.choose_intent(Intent.FAMILY)
    controller.go_back()
    assert controller.step == "intent"

    result = await controller.choose_intent(Intent.PROVIDER)

    assert result.step == "provider_type"
    assert controller.data.intent == Intent.PROVIDER
