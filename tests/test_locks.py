from ingest.locks import (
    REASON_IN_PROGRESS,
    REASON_RATE_LIMITED,
    RESOURCE_INCIDENTS,
    RESOURCE_WEATHER,
    FetchLockRegistry,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_second_fetch_while_in_progress_is_denied() -> None:
    locks = FetchLockRegistry(clock=FakeClock())
    assert locks.try_acquire("t1", RESOURCE_INCIDENTS).allowed

    decision = locks.try_acquire("t1", RESOURCE_INCIDENTS)
    assert not decision.allowed
    assert decision.reason == REASON_IN_PROGRESS
    assert locks.is_in_progress("t1", RESOURCE_INCIDENTS)


def test_fetch_within_min_interval_is_rate_limited() -> None:
    clock = FakeClock()
    locks = FetchLockRegistry(min_interval_seconds=15, clock=clock)
    assert locks.try_acquire("t1", RESOURCE_INCIDENTS).allowed
    locks.release("t1", RESOURCE_INCIDENTS)

    clock.now += 5
    decision = locks.try_acquire("t1", RESOURCE_INCIDENTS)
    assert not decision.allowed
    assert decision.reason == REASON_RATE_LIMITED
    assert decision.detail == "5000ms since last"
    assert decision.describe() == "rate_limited (5000ms since last)"

    clock.now += 10
    assert locks.try_acquire("t1", RESOURCE_INCIDENTS).allowed


def test_resources_and_tenants_are_independent() -> None:
    locks = FetchLockRegistry(clock=FakeClock())
    assert locks.try_acquire("t1", RESOURCE_INCIDENTS).allowed
    assert locks.try_acquire("t1", RESOURCE_WEATHER).allowed
    assert locks.try_acquire("t2", RESOURCE_INCIDENTS).allowed


def test_held_releases_only_acquired_locks() -> None:
    clock = FakeClock()
    locks = FetchLockRegistry(clock=clock)
    with locks.held("t1", RESOURCE_WEATHER) as decision:
        assert decision.allowed
        with locks.held("t1", RESOURCE_WEATHER) as nested:
            assert nested.reason == REASON_IN_PROGRESS
        assert locks.is_in_progress("t1", RESOURCE_WEATHER)
    assert not locks.is_in_progress("t1", RESOURCE_WEATHER)
