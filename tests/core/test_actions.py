import asyncio

import pytest

from merchant_onboarding.core.actions import ActionCoordinator
from merchant_onboarding.errors import DuplicateActionError, MaxRetriesExceededError


class Boom(Exception):
    pass


@pytest.mark.asyncio
async def test_second_execute_while_pending_is_rejected():
    coord = ActionCoordinator(debounce_ms=0)
    gate = asyncio.Event()

    async def slow():
        await gate.wait()
        return "done"

    first = asyncio.create_task(coord.execute("submit_phone", slow))
    await asyncio.sleep(0)
    assert coord.is_pending("submit_phone")
    assert coord.is_any_pending()

    with pytest.raises(DuplicateActionError):
        await coord.execute("submit_phone", slow)

    gate.set()
    assert await first == "done"
    assert not coord.is_pending("submit_phone")


@pytest.mark.asyncio
async def test_failure_reverts_optimistic_update_and_counts():
    coord = ActionCoordinator(debounce_ms=0, max_retries=3)
    model = {"kyb": None}

    async def fails():
        raise Boom("rejected")

    with pytest.raises(Boom):
        await coord.execute(
            "submit_kyb",
            fails,
            optimistic_update=lambda: model.update(kyb="draft"),
            on_revert=lambda: model.update(kyb=None),
        )

    assert model == {"kyb": None}
    status = coord.get_status("submit_kyb")
    assert status.pending is False
    assert status.retry_count == 1
    assert status.last_error == "rejected"
    assert status.can_retry is True


@pytest.mark.asyncio
async def test_success_resets_retry_count():
    coord = ActionCoordinator(debounce_ms=0)

    async def fails():
        raise Boom()

    async def ok():
        return 1

    with pytest.raises(Boom):
        await coord.execute("a", fails)
    assert await coord.execute("a", ok) == 1

    assert coord.get_status("a").retry_count == 0
    assert coord.get_status("a").last_error is None


@pytest.mark.asyncio
async def test_retry_refused_after_max_failures():
    coord = ActionCoordinator(debounce_ms=0, max_retries=2)

    async def fails():
        raise Boom()

    with pytest.raises(Boom):
        await coord.execute("a", fails)
    with pytest.raises(Boom):
        await coord.retry("a", fails)

    assert coord.get_status("a").can_retry is False
    with pytest.raises(MaxRetriesExceededError):
        await coord.retry("a", fails)


@pytest.mark.asyncio
async def test_debounce_collapses_calls_into_the_last_one():
    coord = ActionCoordinator(debounce_ms=30)
    calls = []

    def make(n):
        async def op():
            calls.append(n)
            return n
        return op

    results = await asyncio.gather(
        coord.execute("search", make(1)),
        coord.execute("search", make(2)),
        coord.execute("search", make(3)),
    )

    assert calls == [3]
    assert results == [3, 3, 3]
    assert not coord.is_scheduled("search")


@pytest.mark.asyncio
async def test_debounced_failure_reaches_every_caller():
    coord = ActionCoordinator(debounce_ms=10)

    async def fails():
        raise Boom("nope")

    results = await asyncio.gather(
        coord.execute("x", fails), coord.execute("x", fails), return_exceptions=True
    )

    assert all(isinstance(r, Boom) for r in results)
    assert coord.get_status("x").retry_count == 1


@pytest.mark.asyncio
async def test_clear_pending_cancels_debounce_windows():
    coord = ActionCoordinator(debounce_ms=1000)
    ran = []

    async def op():
        ran.append(1)

    waiter = asyncio.create_task(coord.execute("slow", op))
    await asyncio.sleep(0)
    assert coord.is_scheduled("slow")

    coord.clear_pending()

    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert ran == []
    assert coord.timers.active_count() == 0
