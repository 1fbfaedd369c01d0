from typing import List, Optional

import pytest
from resource_reconciler.models import (
    Found,
    NotFound,
    PollError,
    PollResult,
    ResourceHandle,
    StatusSnapshot,
)
from resource_reconciler.probe import FinderStatusProbe, StatusProbe


class FakeClock:
    """Monotonic time that only moves when something sleeps"""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


class ScriptedProbe(StatusProbe):
    """Replays a fixed sequence of probe results, repeating the last one.

    Entries are status strings, None for a missing resource, or exceptions.
    """

    def __init__(self, script: list, handle: Optional[ResourceHandle] = None):
        super().__init__(handle or ResourceHandle(id="res-1"))
        self.script = list(script)
        self.calls = 0

    async def probe(self) -> PollResult:
        item = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if item is None:
            return NotFound()
        if isinstance(item, Exception):
            return PollError(error=item)
        return Found(snapshot=StatusSnapshot(status=item, raw_response={"status": item}))


class FakeResource:
    """In-memory remote resource whose status advances one step per lookup"""

    def __init__(self, status: Optional[str], handle: Optional[ResourceHandle] = None):
        self.handle = handle or ResourceHandle(id="res-1")
        self.status = status
        self.upcoming: list = []
        self.requests: List[str] = []
        self.failures: dict = {}

    async def lookup(self, handle: ResourceHandle) -> Optional[dict]:
        if self.upcoming:
            self.status = self.upcoming.pop(0)
        if self.status is None:
            return None
        return {"id": handle.id, "status": self.status}

    def probe(self) -> FinderStatusProbe:
        return FinderStatusProbe(self.handle, self.lookup, lambda r: r["status"])

    def request(self, name: str, *then: Optional[str]):
        """A side-effecting call that queues the statuses ``then`` on success"""

        async def call():
            self.requests.append(name)
            errors = self.failures.get(name)
            if errors:
                raise errors.pop(0)
            self.upcoming.extend(then)

        return call


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
