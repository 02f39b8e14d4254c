"""
Onboarding step machine: guard predicates plus a pure reducer over a closed
set of actions. `currentStep` only ever changes through `reduce`.
"""
from dataclasses import dataclass, fields as dc_fields, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional

from merchant_onboarding.store.models import (
    STEP_ORDER,
    Step,
    VerificationStatus,
    WorkflowData,
    WorkflowState,
)


def initial_state() -> WorkflowState:
    return WorkflowState()


# Interaction Surface: one precondition per step, evaluated on accumulated data only.
GUARDS: Dict[Step, Callable[[WorkflowData], bool]] = {
    Step.BUSINESS_TYPE: lambda d: True,
    Step.PHONE: lambda d: bool(d.businessType),
    Step.OTP: lambda d: bool(d.phone),
    Step.CR: lambda d: bool(d.otpVerified),
    Step.ID: lambda d: bool(d.crVerified),
    Step.VERIFICATION: lambda d: bool(d.idVerified),
    Step.KYB: lambda d: d.verificationStatus == VerificationStatus.RECEIVED,
    Step.PASSWORD: lambda d: d.kybData is not None,
    Step.DONE: lambda d: bool(d.passwordSet),
}

# Flag set by MARK_VERIFIED for each step that has its own verification.
VERIFICATION_FLAGS: Dict[Step, str] = {
    Step.OTP: "otpVerified",
    Step.CR: "crVerified",
    Step.ID: "idVerified",
    Step.PASSWORD: "passwordSet",
}

_DATA_FIELDS = {f.name for f in dc_fields(WorkflowData)}


def can_advance_to(state: WorkflowState, target: Step) -> bool:
    try:
        guard = GUARDS[Step(target)]
    except (KeyError, ValueError):
        return False
    return bool(guard(state.data))


def next_step(step: Step) -> Step:
    idx = STEP_ORDER.index(step)
    if idx + 1 >= len(STEP_ORDER):
        return Step.DONE
    return STEP_ORDER[idx + 1]


def previous_step(step: Step) -> Optional[Step]:
    idx = STEP_ORDER.index(step)
    return STEP_ORDER[idx - 1] if idx > 0 else None


class ActionKind(str, Enum):
    SET_FIELD = "SET_FIELD"
    MARK_VERIFIED = "MARK_VERIFIED"
    ADVANCE = "ADVANCE"
    SET_STEP = "SET_STEP"
    SET_VALIDATION_ERROR = "SET_VALIDATION_ERROR"
    CLEAR_VALIDATION_ERROR = "CLEAR_VALIDATION_ERROR"
    SET_LOADING = "SET_LOADING"
    RESET = "RESET"
    RESTORE = "RESTORE"


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    field: Optional[str] = None
    value: Any = None
    step: Optional[Step] = None


def set_field(name: str, value: Any) -> Action:
    return Action(ActionKind.SET_FIELD, field=name, value=value)


def mark_verified(step: Step) -> Action:
    return Action(ActionKind.MARK_VERIFIED, step=Step(step))


def advance() -> Action:
    return Action(ActionKind.ADVANCE)


def set_step(step: Step) -> Action:
    return Action(ActionKind.SET_STEP, step=Step(step))


def set_validation_error(field: str, message: str) -> Action:
    return Action(ActionKind.SET_VALIDATION_ERROR, field=field, value=message)


def clear_validation_error(field: str) -> Action:
    return Action(ActionKind.CLEAR_VALIDATION_ERROR, field=field)


def set_loading(loading: bool) -> Action:
    return Action(ActionKind.SET_LOADING, value=bool(loading))


def reset() -> Action:
    return Action(ActionKind.RESET)


def restore(state: WorkflowState) -> Action:
    return Action(ActionKind.RESTORE, value=state)


def _completed_with(state: WorkflowState, step: Step) -> set:
    return set(state.completedSteps) | {step}


def _reduce_set_field(state: WorkflowState, action: Action) -> WorkflowState:
    name = action.field
    if name not in _DATA_FIELDS:
        raise ValueError(f"Unknown workflow field: {name!r}")
    value = action.value
    if name == "verificationStatus" and value is not None:
        value = VerificationStatus(value)

    data = replace(state.data, **{name: value})
    errors = dict(state.validationErrors)
    errors.pop(name, None)
    completed = set(state.completedSteps)

    # These two steps complete through data, not a flag; withdrawing the data un-completes them
    if name == "verificationStatus":
        if value == VerificationStatus.RECEIVED:
            completed.add(Step.VERIFICATION)
        else:
            completed.discard(Step.VERIFICATION)
    if name == "kybData":
        if value is not None:
            completed.add(Step.KYB)
        else:
            completed.discard(Step.KYB)

    return replace(state, data=data, validationErrors=errors, completedSteps=completed)


def _reduce_advance(state: WorkflowState) -> WorkflowState:
    current = state.currentStep
    target = next_step(current)
    if current != Step.DONE and not can_advance_to(state, target):
        return state
    return replace(state, currentStep=target, completedSteps=_completed_with(state, current))


def reduce(state: WorkflowState, action: Action) -> WorkflowState:
    """
    Pure reducer: returns a new WorkflowState (or `state` itself when nothing
    changes). Never mutates its input.
    """
    kind = action.kind

    if kind == ActionKind.SET_FIELD:
        return _reduce_set_field(state, action)

    if kind == ActionKind.MARK_VERIFIED:
        flag = VERIFICATION_FLAGS.get(action.step)
        if flag is None:
            raise ValueError(f"Step {action.step!r} has no verification flag")
        data = replace(state.data, **{flag: True})
        return replace(state, data=data, completedSteps=_completed_with(state, action.step))

    if kind == ActionKind.ADVANCE:
        return _reduce_advance(state)

    if kind == ActionKind.SET_STEP:
        return replace(state, currentStep=action.step)

    if kind == ActionKind.SET_VALIDATION_ERROR:
        errors = dict(state.validationErrors)
        errors[action.field] = str(action.value or "")
        return replace(state, validationErrors=errors)

    if kind == ActionKind.CLEAR_VALIDATION_ERROR:
        if action.field not in state.validationErrors:
            return state
        errors = dict(state.validationErrors)
        errors.pop(action.field, None)
        return replace(state, validationErrors=errors)

    if kind == ActionKind.SET_LOADING:
        if state.isLoading == action.value:
            return state
        return replace(state, isLoading=action.value)

    if kind == ActionKind.RESET:
        return initial_state()

    if kind == ActionKind.RESTORE:
        if not isinstance(action.value, WorkflowState):
            raise ValueError("RESTORE needs a WorkflowState")
        return action.value

    return state
