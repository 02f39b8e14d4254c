from typing import Callable, Optional

from merchant_onboarding.core.state_machine import (
    Action,
    ActionKind,
    can_advance_to,
    initial_state,
    next_step,
    reduce,
    reset as reset_action,
    restore as restore_action,
)
from merchant_onboarding.events.bus import Disposer, Subject
from merchant_onboarding.observability.logging import log
from merchant_onboarding.store.models import Step, WorkflowState
from merchant_onboarding.store.snapshot_repo import WorkflowSnapshotRepo, scrub_sensitive


class WorkflowStore:
    """
    Live owner of the WorkflowState: every dispatch reduces, persists the
    snapshot and notifies subscribers, in that order. Rehydrates on creation.
    """

    def __init__(self, repo: Optional[WorkflowSnapshotRepo] = None, *, rehydrate: bool = True):
        self.repo = repo or WorkflowSnapshotRepo()
        self._subscribers = Subject[WorkflowState](topic="workflow_state")

        loaded = self.repo.load() if rehydrate else None
        self._state: WorkflowState = loaded or initial_state()
        log(
            event="workflow_loaded",
            rehydrated=loaded is not None,
            currentStep=self._state.currentStep.value,
            completedSteps=len(self._state.completedSteps),
        )

    @property
    def state(self) -> WorkflowState:
        return self._state

    def dispatch(self, action: Action) -> WorkflowState:
        new_state = reduce(self._state, action)
        if new_state == self._state:
            if action.kind == ActionKind.ADVANCE and self._state.currentStep != Step.DONE:
                log(
                    event="workflow_advance_refused",
                    currentStep=self._state.currentStep.value,
                    targetStep=next_step(self._state.currentStep).value,
                )
            return self._state

        previous_step = self._state.currentStep
        self._state = new_state
        self.repo.save(new_state)
        if new_state.currentStep != previous_step:
            log(
                event="workflow_step_changed",
                action=action.kind.value,
                fromStep=previous_step.value,
                toStep=new_state.currentStep.value,
            )
        self._subscribers.publish(new_state)
        return new_state

    def subscribe(self, handler: Callable[[WorkflowState], object]) -> Disposer:
        return self._subscribers.subscribe(handler)

    def can_advance_to(self, step: Step) -> bool:
        return can_advance_to(self._state, step)

    def is_step_completed(self, step: Step) -> bool:
        return Step(step) in self._state.completedSteps

    def reset(self) -> WorkflowState:
        """Back to the initial state, with durable storage cleared."""
        self.dispatch(reset_action())
        self.repo.clear()
        log(event="workflow_reset")
        return self._state

    # --- checkpoints ---

    def checkpoint(self, label: str, *, scrub: bool = True) -> bool:
        state = scrub_sensitive(self._state) if scrub else self._state
        return self.repo.create_checkpoint(state, label)

    def restore_checkpoint(self, label: str) -> bool:
        """
        Replace the live state with a checkpoint, through the reducer like any
        other change. A checkpoint taken with `scrub=True` comes back without
        `idNumber`, so the ID step must be submitted again before identity
        verification can start.
        """
        restored = self.repo.restore_checkpoint(label)
        if restored is None:
            log(event="workflow_checkpoint_missing", label=label)
            return False
        self.dispatch(restore_action(restored))
        log(event="workflow_checkpoint_restored", label=label, currentStep=restored.currentStep.value)
        return True

    def close(self) -> None:
        self._subscribers.clear()
