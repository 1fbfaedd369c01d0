import asyncio
from typing import Any, Awaitable, Callable, FrozenSet, List, Optional, Sequence, Type

from loguru import logger
from pydantic import BaseModel, ConfigDict

from resource_reconciler.classifier import ErrorClassifier
from resource_reconciler.errors import (
    FatalError,
    NotFoundTerminalError,
    WaitCancelledError,
    WaitError,
    WaitSpecError,
    WaitTimeoutError,
)
from resource_reconciler.models import (
    ABSENT_STATUS,
    ErrorKind,
    NotFound,
    NotFoundPolicy,
    PollError,
    StatusSnapshot,
    WaitSpec,
)
from resource_reconciler.probe import StatusProbe
from resource_reconciler.retry import retry_on_transient
from resource_reconciler.state_refresher import StateRefresher, StatusCallback


class Phase(BaseModel):
    """One remote-side step of a transition: an optional request, then a wait.

    Before running, the resource is probed once. A status in ``spec.target`` or
    ``skip_statuses`` means the phase already happened and it is skipped
    (``ABSENT_STATUS`` in ``skip_statuses`` skips it for a missing resource). A
    status in ``resume_statuses`` means the request was already accepted, so
    only the wait runs.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    spec: WaitSpec
    action: Optional[Callable[[], Awaitable[Any]]] = None
    probe: Optional[StatusProbe] = None
    skip_statuses: FrozenSet[str] = frozenset()
    resume_statuses: FrozenSet[str] = frozenset()


class Reconciler:
    def __init__(
        self,
        probe: Optional[StatusProbe] = None,
        classifier: Optional[ErrorClassifier] = None,
        on_status_change: Optional[StatusCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.probe = probe
        self.classifier = classifier or ErrorClassifier()
        self.on_status_change = on_status_change
        self.cancel_event = cancel_event
        self.sleep = sleep
        self.clock = clock or (lambda: asyncio.get_event_loop().time())
        self.logger = logger
        self.executed_phases: List[str] = []
        self.polls = 0

    def _probe_for(self, phase: Phase) -> StatusProbe:
        probe = phase.probe or self.probe
        if probe is None:
            raise WaitSpecError(f"phase '{phase.name}' has no status probe")
        return probe

    def _refresher(self, probe: StatusProbe, spec: WaitSpec) -> StateRefresher:
        return StateRefresher(
            probe,
            spec,
            classifier=self.classifier,
            on_status_change=self.on_status_change,
            cancel_event=self.cancel_event,
            sleep=self.sleep,
            clock=self.clock,
        )

    async def _current_state(self, probe: StatusProbe) -> Optional[StatusSnapshot]:
        """Probes once; None when the state could not be determined"""
        result = await probe.probe()
        self.polls += 1

        if isinstance(result, PollError):
            kind = self.classifier.classify(result.error)
            if kind is ErrorKind.fatal:
                raise FatalError(
                    f"{probe.handle}: unrecoverable error: {result.error}",
                    handle=probe.handle,
                    polls=self.polls,
                ) from result.error
            if kind is ErrorKind.transient:
                self.logger.warning(
                    f"Could not determine state of {probe.handle}: {result.error!r}"
                )
                return None
            result = NotFound()

        if isinstance(result, NotFound):
            return StatusSnapshot.absent_snapshot()
        return result.snapshot

    def _already_done(self, phase: Phase, current: StatusSnapshot) -> bool:
        if current.absent:
            return (
                phase.spec.not_found_policy is NotFoundPolicy.success
                or ABSENT_STATUS in phase.skip_statuses
            )
        return current.status in phase.spec.target or current.status in phase.skip_statuses

    def _phase_error(
        self,
        error_class: Type[WaitError],
        message: str,
        probe: StatusProbe,
        started: float,
        last_snapshot: Optional[StatusSnapshot],
    ) -> WaitError:
        error = error_class(
            f"{probe.handle}: {message}",
            handle=probe.handle,
            last_snapshot=last_snapshot,
            elapsed_time=self.clock() - started,
            polls=self.polls,
        )
        self.logger.error(str(error))
        return error

    async def _run_action(
        self,
        phase: Phase,
        probe: StatusProbe,
        current: Optional[StatusSnapshot],
        started: float,
    ) -> bool:
        """Issues the phase request; True if the resource turned out to be gone already"""
        try:
            await retry_on_transient(
                phase.action,
                timeout=phase.spec.timeout,
                classifier=self.classifier,
                min_delay=phase.spec.min_delay,
                max_delay=phase.spec.max_delay,
                backoff_factor=phase.spec.backoff_factor,
                sleep=self.sleep,
                clock=self.clock,
            )
        except Exception as e:
            kind = self.classifier.classify(e)
            if kind is ErrorKind.not_found:
                if phase.spec.not_found_policy is NotFoundPolicy.success:
                    self.logger.info(f"{probe.handle} already gone during '{phase.name}'")
                    return True
                error_class = NotFoundTerminalError
            elif kind is ErrorKind.transient:
                error_class = WaitTimeoutError
            else:
                error_class = FatalError
            raise self._phase_error(
                error_class,
                f"phase '{phase.name}' request failed: {e}",
                probe,
                started,
                current,
            ) from e
        return False

    async def run(self, phases: Sequence[Phase]) -> StatusSnapshot:
        if not phases:
            raise WaitSpecError("no phases to reconcile")

        self.polls = 0
        run_started = self.clock()
        snapshot: Optional[StatusSnapshot] = None
        for index, phase in enumerate(phases, start=1):
            probe = self._probe_for(phase)
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise self._phase_error(
                    WaitCancelledError,
                    f"cancelled before phase '{phase.name}'",
                    probe,
                    run_started,
                    snapshot,
                )

            current = await self._current_state(probe)
            if current is not None and self._already_done(phase, current):
                self.logger.info(
                    f"{probe.handle} already past phase '{phase.name}' "
                    f"(state '{current.status}'), skipping"
                )
                snapshot = current
                continue

            self.logger.info(f"{probe.handle}: phase {index}/{len(phases)} '{phase.name}'")
            self.executed_phases.append(phase.name)
            started = self.clock()

            resuming = current is not None and current.status in phase.resume_statuses
            if phase.action is not None and not resuming:
                if await self._run_action(phase, probe, current, started):
                    snapshot = StatusSnapshot.absent_snapshot()
                    continue
            elif resuming:
                self.logger.info(
                    f"{probe.handle} already '{current.status}', waiting without a new request"
                )

            # The request and the wait share the phase timeout
            remaining = phase.spec.timeout - (self.clock() - started)
            if remaining <= 0:
                raise self._phase_error(
                    WaitTimeoutError,
                    f"phase '{phase.name}' timed out before its wait began",
                    probe,
                    started,
                    current,
                )
            refresher = self._refresher(
                probe, phase.spec.model_copy(update={"timeout": remaining})
            )
            try:
                snapshot = await refresher.wait()
            finally:
                self.polls += refresher.polls

        return snapshot


async def wait_for(
    probe: StatusProbe, spec: WaitSpec, **kwargs: Any
) -> StatusSnapshot:
    """Waits for the resource behind ``probe`` to reach one of ``spec.target``"""
    return await StateRefresher(probe, spec, **kwargs).wait()


async def reconcile(
    phases: Sequence[Phase], probe: Optional[StatusProbe] = None, **kwargs: Any
) -> StatusSnapshot:
    """Runs ``phases`` in order, skipping those the resource is already past"""
    return await Reconciler(probe, **kwargs).run(phases)
