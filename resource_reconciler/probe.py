from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from resource_reconciler.models import (
    Found,
    NotFound,
    PollError,
    PollResult,
    ResourceHandle,
    StatusSnapshot,
)

Finder = Callable[[ResourceHandle], Awaitable[Optional[Any]]]


class StatusProbe(ABC):
    """One remote status query for one resource.

    Implementations issue exactly one request per call and never retry.
    Absence is reported as ``NotFound``; any other failure is returned as
    ``PollError`` rather than raised.
    """

    def __init__(self, handle: ResourceHandle):
        self.handle = handle

    @abstractmethod
    async def probe(self) -> PollResult:
        ...


class FinderStatusProbe(StatusProbe):
    """Adapts a finder ``lookup(handle)`` and a status extractor into a probe"""

    def __init__(
        self,
        handle: ResourceHandle,
        lookup: Finder,
        status_of: Callable[[Any], str],
    ):
        super().__init__(handle)
        self.lookup = lookup
        self.status_of = status_of
        self.logger = logger

    async def probe(self) -> PollResult:
        try:
            resource = await self.lookup(self.handle)
        except Exception as e:
            self.logger.debug(f"Lookup of {self.handle} failed: {e!r}")
            return PollError(error=e)

        if resource is None:
            return NotFound()

        try:
            status = self.status_of(resource)
        except Exception as e:
            self.logger.debug(f"Could not read the status of {self.handle}: {e!r}")
            return PollError(error=e)

        return Found(snapshot=StatusSnapshot(status=status, raw_response=resource))
