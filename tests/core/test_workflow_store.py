from unittest.mock import MagicMock, patch

from merchant_onboarding.core import state_machine as sm
from merchant_onboarding.core.workflow import WorkflowStore
from merchant_onboarding.store.models import Step
from merchant_onboarding.store.snapshot_repo import WorkflowSnapshotRepo


def test_dispatch_persists_then_notifies(fake_redis):
    repo = WorkflowSnapshotRepo(fake_redis)
    store = WorkflowStore(repo)
    seen = []
    store.subscribe(lambda s: seen.append((s.data.businessType, repo.load().data.businessType)))

    store.dispatch(sm.set_field("businessType", "company"))

    # Subscribers already observe the persisted snapshot
    assert seen == [("company", "company")]


def test_noop_dispatch_neither_persists_nor_notifies():
    repo = MagicMock()
    repo.load.return_value = None
    store = WorkflowStore(repo)
    handler = MagicMock()
    store.subscribe(handler)

    store.dispatch(sm.set_loading(False))
    store.dispatch(sm.advance())  # guard for PHONE fails

    repo.save.assert_not_called()
    handler.assert_not_called()


def test_disposer_unsubscribes(fake_redis):
    store = WorkflowStore(WorkflowSnapshotRepo(fake_redis))
    handler = MagicMock()
    dispose = store.subscribe(handler)

    dispose()
    store.dispatch(sm.set_field("businessType", "company"))

    handler.assert_not_called()


def test_rehydrates_from_snapshot(fake_redis):
    first = WorkflowStore(WorkflowSnapshotRepo(fake_redis))
    first.dispatch(sm.set_field("businessType", "freelancer"))
    first.dispatch(sm.advance())

    second = WorkflowStore(WorkflowSnapshotRepo(fake_redis))

    assert second.state.currentStep == Step.PHONE
    assert second.is_step_completed(Step.BUSINESS_TYPE)
    assert second.can_advance_to(Step.PHONE)
    assert not second.can_advance_to(Step.OTP)


def test_reset_clears_durable_storage(fake_redis):
    store = WorkflowStore(WorkflowSnapshotRepo(fake_redis))
    store.dispatch(sm.set_field("businessType", "company"))

    store.reset()

    assert store.state == sm.initial_state()
    assert "onboarding_state" not in fake_redis.store


def test_persistence_failure_keeps_memory_authoritative(fake_redis):
    store = WorkflowStore(WorkflowSnapshotRepo(fake_redis))
    fake_redis.fail = True

    store.dispatch(sm.set_field("businessType", "company"))

    assert store.state.data.businessType == "company"


def test_checkpoint_scrubs_and_restores(fake_redis):
    store = WorkflowStore(WorkflowSnapshotRepo(fake_redis))
    store.dispatch(sm.set_field("idNumber", "1012345678"))
    store.dispatch(sm.mark_verified(Step.ID))
    assert store.checkpoint("after-id") is True

    store.reset()
    handler = MagicMock()
    store.subscribe(handler)

    assert store.restore_checkpoint("after-id") is True
    assert store.state.data.idVerified is True
    assert store.state.data.idNumber is None
    handler.assert_called_once_with(store.state)
    assert store.restore_checkpoint("nope") is False


def test_refused_advance_is_logged_by_the_store(fake_redis):
    store = WorkflowStore(WorkflowSnapshotRepo(fake_redis))

    with patch("merchant_onboarding.core.workflow.log") as mock_log:
        store.dispatch(sm.advance())

    mock_log.assert_called_once_with(
        event="workflow_advance_refused", currentStep="businessType", targetStep="phone"
    )
    assert store.state.currentStep == Step.BUSINESS_TYPE


def test_unscrubbed_checkpoint_restores_through_dispatch(fake_redis):
    repo = WorkflowSnapshotRepo(fake_redis)
    store = WorkflowStore(repo)
    store.dispatch(sm.set_field("idNumber", "1012345678"))
    store.dispatch(sm.mark_verified(Step.ID))
    assert store.checkpoint("diag", scrub=False) is True
    store.reset()

    assert store.restore_checkpoint("diag") is True

    assert store.state.data.idNumber == "1012345678"
    assert store.can_advance_to(Step.VERIFICATION)
    # Persisted like any other dispatch
    assert repo.load() == store.state
