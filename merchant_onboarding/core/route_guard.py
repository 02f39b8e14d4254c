from dataclasses import dataclass
from typing import Dict, Optional

from merchant_onboarding.core.state_machine import can_advance_to
from merchant_onboarding.navigation import Navigator
from merchant_onboarding.observability.logging import log
from merchant_onboarding.store.models import STEP_ORDER, Step, WorkflowState

STEP_PATHS: Dict[Step, str] = {
    Step.BUSINESS_TYPE: "/onboarding/business-type",
    Step.PHONE: "/onboarding/phone",
    Step.OTP: "/onboarding/otp",
    Step.CR: "/onboarding/cr-number",
    Step.ID: "/onboarding/id-number",
    Step.VERIFICATION: "/onboarding/verification",
    Step.KYB: "/onboarding/kyb",
    Step.PASSWORD: "/onboarding/password",
    Step.DONE: "/onboarding/complete",
}
PATH_STEPS: Dict[str, Step] = {path: step for step, path in STEP_PATHS.items()}

GLOBAL_SCREENING_PATH = "/onboarding/global-screening"
# Routable screens that are not workflow steps; each borrows a step's guard
PASS_THROUGH_PATHS: Dict[str, Step] = {
    GLOBAL_SCREENING_PATH: Step.KYB,
}


@dataclass(frozen=True)
class RouteDecision:
    allowed: bool
    step: Optional[Step]
    redirect_to: Optional[str] = None


def furthest_accessible_step(state: WorkflowState) -> Step:
    # Scan from the end: guards are checked individually, never inferred from neighbours
    for step in reversed(STEP_ORDER):
        if can_advance_to(state, step):
            return step
    return STEP_ORDER[0]


def path_for(step: Step) -> str:
    return STEP_PATHS[Step(step)]


def check(state: WorkflowState, step: Step, *, redirect_to: Optional[str] = None) -> RouteDecision:
    step = Step(step)
    if can_advance_to(state, step):
        return RouteDecision(allowed=True, step=step)
    target = redirect_to or path_for(furthest_accessible_step(state))
    return RouteDecision(allowed=False, step=step, redirect_to=target)


def _normalize(path: str) -> str:
    path = (path or "/").split("?", 1)[0].split("#", 1)[0]
    return path.rstrip("/") or "/"


def check_path(state: WorkflowState, path: str) -> RouteDecision:
    """Paths outside the step map (and its pass-throughs) are not guarded here."""
    path = _normalize(path)
    step = PATH_STEPS.get(path) or PASS_THROUGH_PATHS.get(path)
    if step is None:
        return RouteDecision(allowed=True, step=None)
    return check(state, step)


def enforce(state: WorkflowState, path: str, navigator: Navigator) -> RouteDecision:
    decision = check_path(state, path)
    if decision.allowed:
        return decision
    log(
        event="route_denied",
        path=_normalize(path),
        requiredStep=decision.step.value if decision.step else None,
        redirectTo=decision.redirect_to,
    )
    if _normalize(navigator.current_path) != decision.redirect_to:
        navigator.navigate(decision.redirect_to, replace=True)
    return decision
