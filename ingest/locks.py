from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass


RESOURCE_INCIDENTS = "incidents"
RESOURCE_WEATHER = "weather"
RESOURCE_UNIT_LEGEND = "unit_legend"

REASON_IN_PROGRESS = "concurrent_fetch_in_progress"
REASON_RATE_LIMITED = "rate_limited"


@dataclass
class LockState:
    in_progress: bool
    last_fetch_time: float


@dataclass(frozen=True)
class LockDecision:
    allowed: bool
    reason: str | None = None
    detail: str | None = None

    def describe(self) -> str | None:
        if self.reason is None:
            return None
        if self.detail:
            return f"{self.reason} ({self.detail})"
        return self.reason


class FetchLockRegistry:
    """Process-local per-(tenant, resource) fetch gate.

    State lives in this process only; running several workers would need a shared
    store with short-TTL keys to keep one fetch per tenant and resource.
    """

    def __init__(
        self,
        *,
        min_interval_seconds: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._min_interval = min_interval_seconds
        self._clock = clock
        self._mutex = threading.Lock()
        self._states: dict[tuple[str, str], LockState] = {}

    def try_acquire(self, tenant_id: str, resource: str) -> LockDecision:
        key = (tenant_id, resource)
        with self._mutex:
            now = self._clock()
            state = self._states.get(key)
            if state is not None:
                if state.in_progress:
                    return LockDecision(False, REASON_IN_PROGRESS)
                elapsed = now - state.last_fetch_time
                if elapsed < self._min_interval:
                    return LockDecision(
                        False,
                        REASON_RATE_LIMITED,
                        f"{int(elapsed * 1000)}ms since last",
                    )
            self._states[key] = LockState(in_progress=True, last_fetch_time=now)
            return LockDecision(True)

    def release(self, tenant_id: str, resource: str) -> None:
        with self._mutex:
            state = self._states.get((tenant_id, resource))
            if state is not None:
                state.in_progress = False

    def is_in_progress(self, tenant_id: str, resource: str) -> bool:
        with self._mutex:
            state = self._states.get((tenant_id, resource))
            return state is not None and state.in_progress

    @contextmanager
    def held(self, tenant_id: str, resource: str) -> Iterator[LockDecision]:
        decision = self.try_acquire(tenant_id, resource)
        try:
            yield decision
        finally:
            if decision.allowed:
                self.release(tenant_id, resource)
