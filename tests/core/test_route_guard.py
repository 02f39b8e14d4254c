from dataclasses import replace

import pytest

from merchant_onboarding.core import route_guard
from merchant_onboarding.core import state_machine as sm
from merchant_onboarding.navigation import InMemoryNavigator
from merchant_onboarding.store.models import STEP_ORDER, Step, VerificationStatus, WorkflowData


def _state(**data):
    return replace(sm.initial_state(), data=WorkflowData(**data))


def _state_at_kyb_without_received():
    state = _state(
        businessType="company",
        phone="+966500000001",
        otpVerified=True,
        crVerified=True,
        idVerified=True,
        verificationStatus=VerificationStatus.UNDER_REVIEW,
    )
    return replace(state, currentStep=Step.KYB)


def test_every_step_has_a_unique_path():
    assert set(route_guard.STEP_PATHS) == set(STEP_ORDER)
    assert len(set(route_guard.STEP_PATHS.values())) == len(STEP_ORDER)


def test_direct_kyb_navigation_redirects_to_verification():
    state = _state_at_kyb_without_received()
    nav = InMemoryNavigator("/onboarding/kyb")

    decision = route_guard.enforce(state, "/onboarding/kyb", nav)

    assert decision.allowed is False
    assert decision.redirect_to == "/onboarding/verification"
    assert nav.history == [("/onboarding/verification", True)]


def test_furthest_step_is_largest_index_with_passing_guard():
    # Non-monotonic data: CR verified but OTP flag missing
    state = _state(businessType="company", phone="+966500000001", crVerified=True)

    assert route_guard.furthest_accessible_step(state) == Step.ID


def test_furthest_step_of_fresh_state_is_first_step():
    assert route_guard.furthest_accessible_step(sm.initial_state()) == Step.BUSINESS_TYPE


@pytest.mark.parametrize("step", STEP_ORDER)
def test_redirect_target_never_exceeds_a_passing_guard(step):
    state = _state(businessType="company", phone="+966500000001", otpVerified=True)
    decision = route_guard.check(state, step)

    if decision.allowed:
        assert sm.can_advance_to(state, step)
    else:
        target = route_guard.PATH_STEPS[decision.redirect_to]
        assert sm.can_advance_to(state, target)
        later = STEP_ORDER[STEP_ORDER.index(target) + 1:]
        assert not any(sm.can_advance_to(state, s) for s in later)


def test_allowed_path_does_not_navigate():
    nav = InMemoryNavigator("/onboarding/phone")

    decision = route_guard.enforce(_state(businessType="company"), "/onboarding/phone/", nav)

    assert decision.allowed is True
    assert decision.step == Step.PHONE
    assert nav.history == []


def test_no_second_redirect_when_already_on_target():
    nav = InMemoryNavigator("/onboarding/business-type")

    route_guard.enforce(sm.initial_state(), "/onboarding/otp", nav)

    assert nav.history == []


def test_global_screening_borrows_kyb_guard():
    blocked = route_guard.check_path(_state_at_kyb_without_received(), route_guard.GLOBAL_SCREENING_PATH)
    assert blocked.allowed is False
    assert blocked.redirect_to == "/onboarding/verification"

    ok = route_guard.check_path(
        _state(verificationStatus=VerificationStatus.RECEIVED), route_guard.GLOBAL_SCREENING_PATH
    )
    assert ok.allowed is True
    assert ok.step == Step.KYB


def test_paths_outside_onboarding_are_not_guarded():
    decision = route_guard.check_path(sm.initial_state(), "/dashboard?tab=cards")

    assert decision.allowed is True
    assert decision.step is None


def test_explicit_redirect_override():
    decision = route_guard.check(sm.initial_state(), Step.KYB, redirect_to="/login")

    assert decision.redirect_to == "/login"
