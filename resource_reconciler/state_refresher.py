import asyncio
from typing import Any, Awaitable, Callable, Optional, Type

from loguru import logger

from resource_reconciler.classifier import ErrorClassifier
from resource_reconciler.errors import (
    FatalError,
    NotFoundTerminalError,
    UnexpectedStateError,
    WaitCancelledError,
    WaitError,
    WaitTimeoutError,
)
from resource_reconciler.models import (
    ErrorKind,
    Found,
    NotFound,
    NotFoundPolicy,
    PollError,
    PollResult,
    StatusSnapshot,
    WaitSpec,
)
from resource_reconciler.probe import StatusProbe

StatusCallback = Callable[[StatusSnapshot], Awaitable[Any]]


def compute_delay(
    iteration: int, min_delay: float, max_delay: float, backoff_factor: float
) -> float:
    """Delay before poll ``iteration + 1``: exponential growth capped at max_delay"""
    return min(min_delay * (backoff_factor**iteration), max_delay)


class StateRefresher:
    """Polls a StatusProbe until the resource reaches one of the WaitSpec targets.

    Transient errors and, under the ``continue_polling`` policy, not-found
    results are absorbed and only cost time. Every other outcome ends the wait:
    a target status returns the snapshot, anything else raises a WaitError
    subclass carrying the handle, the last snapshot and the elapsed time.
    """

    def __init__(
        self,
        probe: StatusProbe,
        spec: WaitSpec,
        classifier: Optional[ErrorClassifier] = None,
        on_status_change: Optional[StatusCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.probe = probe
        self.spec = spec
        self.classifier = classifier or ErrorClassifier()
        self.on_status_change = on_status_change
        self.cancel_event = cancel_event
        self.sleep = sleep or asyncio.sleep
        self.clock = clock or (lambda: asyncio.get_event_loop().time())
        self.logger = logger

        self._start: Optional[float] = None
        self._polls = 0
        self._last_snapshot: Optional[StatusSnapshot] = None
        self._last_error: Optional[BaseException] = None

    @property
    def polls(self) -> int:
        return self._polls

    def _elapsed(self) -> float:
        if self._start is None:
            return 0.0
        return self.clock() - self._start

    def _calculate_delay(self, iteration: int) -> float:
        return compute_delay(
            iteration,
            self.spec.min_delay,
            self.spec.max_delay,
            self.spec.backoff_factor,
        )

    def _fail(self, error_class: Type[WaitError], message: str, **kwargs: Any) -> WaitError:
        elapsed = self._elapsed()
        error = error_class(
            message=f"{self.probe.handle}: {message} ({self._polls} polls, {elapsed:.1f}s)",
            handle=self.probe.handle,
            last_snapshot=self._last_snapshot,
            elapsed_time=elapsed,
            polls=self._polls,
            **kwargs,
        )
        self.logger.error(str(error))
        return error

    def _raise_if_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise self._fail(WaitCancelledError, "wait cancelled")

    async def _handle_status_change(
        self, snapshot: StatusSnapshot, last_status: Optional[str]
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status != snapshot.status and self.on_status_change is not None:
            self.logger.debug(f"{self.probe.handle} status changed to '{snapshot.status}'")
            await self.on_status_change(snapshot)

    async def _race(self, awaitable: Awaitable[Any], timeout: Optional[float] = None):
        """Runs ``awaitable`` against the cancel event and an optional timeout.

        Returns the finished task, or None if it was cancelled or ran out of time.
        """
        work = asyncio.ensure_future(awaitable)
        tasks = {work}
        if self.cancel_event is not None:
            tasks.add(asyncio.ensure_future(self.cancel_event.wait()))
        try:
            done, _ = await asyncio.wait(
                tasks, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        return work if work in done else None

    async def _sleep(self, delay: float) -> None:
        """Sleeps for ``delay`` seconds, returning early once cancelled"""
        if self.cancel_event is None:
            await self.sleep(delay)
            return
        await self._race(self.sleep(delay))

    async def _probe(self) -> PollResult:
        """Issues one probe, giving up once the deadline plus one minimum delay has passed"""
        budget = self.spec.timeout - self._elapsed() + self.spec.min_delay
        if budget <= 0:
            raise self._timeout()

        self._polls += 1
        finished = await self._race(self.probe.probe(), timeout=budget)
        if finished is None:
            self._raise_if_cancelled()
            self.logger.warning(f"Probe of {self.probe.handle} still running at the deadline")
            raise self._timeout()
        return finished.result()

    async def _wait_before_retry(self, iteration: int) -> None:
        """Raises on timeout, otherwise waits the scheduled delay, never past the deadline"""
        if self.spec.max_polls is not None and self._polls >= self.spec.max_polls:
            raise self._timeout()

        remaining = self.spec.timeout - self._elapsed()
        if remaining <= 0:
            raise self._timeout()

        delay = min(self._calculate_delay(iteration), remaining)
        self.logger.debug(
            f"{self.probe.handle} not ready, waiting {delay:.2f}s before next poll"
        )
        await self._sleep(delay)

    def _timeout(self) -> WaitError:
        message = f"timeout while waiting for {sorted(self.spec.target)}"
        if self._last_snapshot is not None:
            message += f", last state: '{self._last_snapshot.status}'"
        if self._last_error is not None:
            message += f", last error: {self._last_error}"
        return self._fail(WaitTimeoutError, message)

    async def wait(self) -> StatusSnapshot:
        spec = self.spec
        target_seen = 0
        not_found_seen = 0
        last_status: Optional[str] = None
        self._start = None
        self._polls = 0
        self._last_snapshot = None
        self._last_error = None

        self._raise_if_cancelled()
        if spec.initial_delay > 0:
            await self._sleep(spec.initial_delay)

        self._start = self.clock()
        while True:
            self._raise_if_cancelled()

            result = await self._probe()

            if isinstance(result, PollError):
                kind = self.classifier.classify(result.error)
                if kind is ErrorKind.fatal:
                    error = self._fail(FatalError, f"unrecoverable error: {result.error}")
                    raise error from result.error
                self._last_error = result.error
                if kind is ErrorKind.not_found:
                    result = NotFound()
                else:
                    self.logger.warning(
                        f"Transient error polling {self.probe.handle}: {result.error!r}"
                    )

            if isinstance(result, NotFound):
                target_seen = 0
                absent = StatusSnapshot.absent_snapshot(self._elapsed())
                await self._handle_status_change(absent, last_status)
                last_status = absent.status
                self._last_snapshot = absent

                if spec.not_found_policy is NotFoundPolicy.success:
                    self.logger.info(f"{self.probe.handle} is gone")
                    return absent
                if spec.not_found_policy is NotFoundPolicy.failure:
                    raise self._fail(NotFoundTerminalError, "resource not found")

                not_found_seen += 1
                if spec.not_found_checks is not None and not_found_seen >= spec.not_found_checks:
                    raise self._fail(
                        NotFoundTerminalError,
                        f"resource not found after {not_found_seen} checks",
                    )

            elif isinstance(result, Found):
                not_found_seen = 0
                snapshot = result.snapshot.model_copy(
                    update={"elapsed_time": self._elapsed()}
                )
                await self._handle_status_change(snapshot, last_status)
                last_status = snapshot.status
                self._last_snapshot = snapshot

                if snapshot.status in spec.target:
                    target_seen += 1
                    if target_seen >= spec.target_occurrences:
                        self.logger.info(
                            f"{self.probe.handle} reached '{snapshot.status}' "
                            f"after {self._polls} polls"
                        )
                        return snapshot
                elif spec.is_pending(snapshot.status):
                    target_seen = 0
                else:
                    raise self._fail(
                        UnexpectedStateError,
                        f"unexpected state '{snapshot.status}', "
                        f"wanted one of {sorted(spec.expected_statuses())}",
                        status=snapshot.status,
                        expected=spec.expected_statuses(),
                    )

            await self._wait_before_retry(self._polls - 1)
