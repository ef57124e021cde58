"""Threaded driver for a release.

Exactly one consumer (whoever calls `pump`/`run_until_idle`) applies events
to the machine; step workers and the pipeline observer only `post`. At most
one step worker runs at a time.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable

from relix.core.result import Err, Ok, Result
from relix.services.release.errors import ReleaseError, StepExecutionError
from relix.services.release.events import (
    MRCreated,
    PipelineStatusUpdated,
    ReleaseEvent,
    StepCompleted,
    StepOutcome,
    SubStepDone,
)
from relix.services.release.history import HistoryEntry
from relix.services.release.machine import ReleaseStateMachine
from relix.services.release.pipeline import PipelineObserver, PipelineStatus
from relix.services.release.state import ReleaseState
from relix.services.release.steps import ReleaseStep

__all__ = ["ObserverFactory", "ReleaseLoop"]

ObserverFactory = Callable[[ReleaseState, Callable[[PipelineStatus], None]], PipelineObserver | None]

_POLL_SECONDS = 0.1


class ReleaseLoop:
    def __init__(
        self,
        machine: ReleaseStateMachine,
        *,
        on_event: Callable[[ReleaseEvent], None] | None = None,
        observer_factory: ObserverFactory | None = None,
    ) -> None:
        self.machine = machine
        self._on_event = on_event
        self._observer_factory = observer_factory
        self._queue: queue.Queue[tuple[int, ReleaseEvent]] = queue.Queue()
        self._generation = 0
        self._in_flight: ReleaseStep | None = None
        self._worker: threading.Thread | None = None
        self._observer: PipelineObserver | None = None
        self._error: ReleaseError | None = None
        self.pipeline_status: PipelineStatus | None = None

    @property
    def busy(self) -> bool:
        return self._in_flight is not None

    @property
    def error(self) -> ReleaseError | None:
        """Last persistence error raised while applying events."""
        return self._error

    @property
    def observing(self) -> bool:
        return self._observer is not None and self._observer.is_observing

    def post(self, event: ReleaseEvent) -> None:
        """Queue an event; safe from any thread."""
        self._queue.put((self._generation, event))

    # -- step workers -------------------------------------------------------

    def dispatch(self, step: ReleaseStep) -> bool:
        """Run `step` on a worker thread; False when one is already running."""
        if self._in_flight is not None or self.machine.is_finished:
            return False
        self._in_flight = step
        snapshot = self.machine.state
        generation = self._generation

        def work() -> None:
            def post(event: ReleaseEvent) -> None:
                self._queue.put((generation, event))

            try:
                outcome: StepOutcome = self.machine.perform(snapshot, step, post)
            except Exception as e:
                # A worker must always report back or the consumer waits forever.
                outcome = StepCompleted(
                    step, failure=StepExecutionError(step, f"{step.label} crashed: {e!r}")
                )
            post(outcome)

        self._worker = threading.Thread(target=work, name=f"relix-step-{step.slug}", daemon=True)
        self._worker.start()
        return True

    def _join_worker(self) -> None:
        worker, self._worker = self._worker, None
        if worker is not None and worker is not threading.current_thread():
            worker.join()

    # -- consumer -----------------------------------------------------------

    def process(self, event: ReleaseEvent) -> None:
        """Apply one event on the consumer thread."""
        match event:
            case SubStepDone():
                self._apply(event)
            case StepCompleted() | MRCreated():
                self._in_flight = None
                self._join_worker()
                upcoming = self._apply(event)
                if isinstance(event, MRCreated) and event.step == ReleaseStep.PUSH_AND_CREATE_MR:
                    self.start_observer()
                if upcoming is not None:
                    self.dispatch(upcoming)
            case PipelineStatusUpdated(status=status):
                self.pipeline_status = status
            case _:
                pass
        if self._on_event is not None:
            self._on_event(event)

    def _apply(self, event: ReleaseEvent) -> ReleaseStep | None:
        result = self.machine.apply(event)
        if isinstance(result, Err):
            self._error = result.error
            return None
        return result.value

    def pump(self, timeout: float = _POLL_SECONDS) -> bool:
        """Process queued events, waiting up to `timeout` for the first one.

        Returns False when nothing arrived.
        """
        try:
            generation, event = self._queue.get(timeout=timeout)
        except queue.Empty:
            return False
        while True:
            if generation == self._generation:
                self.process(event)
            try:
                generation, event = self._queue.get_nowait()
            except queue.Empty:
                return True

    def run_until_idle(self) -> ReleaseState:
        """Pump until no step is running and the queue is drained."""
        while self.busy or not self._queue.empty():
            self.pump()
        return self.machine.state

    # -- user actions -------------------------------------------------------

    def _begin(self, begun: Result[ReleaseStep, ReleaseError]) -> Result[None, ReleaseError]:
        if isinstance(begun, Err):
            return begun
        if not self.dispatch(begun.value):
            return Err(ReleaseError(kind="invalid_state", message="a step is already running"))
        return Ok(None)

    def run(self) -> Result[None, ReleaseError]:
        """Start the current step, if it is runnable."""
        state = self.machine.state
        if state.last_error is not None or not state.current_step.is_executable:
            return Err(
                ReleaseError(kind="invalid_state", message=f"nothing to run at {state.current_step.label}")
            )
        return self._begin(Ok(state.current_step))

    def retry(self) -> Result[None, ReleaseError]:
        if self.busy:
            return Err(ReleaseError(kind="invalid_state", message="a step is already running"))
        return self._begin(self.machine.begin_retry())

    def create_mr(self) -> Result[None, ReleaseError]:
        if self.busy:
            return Err(ReleaseError(kind="invalid_state", message="a step is already running"))
        return self._begin(self.machine.begin_create_mr())

    def push_root(self) -> Result[None, ReleaseError]:
        if self.busy:
            return Err(ReleaseError(kind="invalid_state", message="a step is already running"))
        self.stop_observer()
        return self._begin(self.machine.begin_push_root())

    def abort(self, *, delete_remote: bool = False) -> Result[HistoryEntry | None, ReleaseError]:
        """Stop everything, then let the machine clean up.

        Events still queued from the aborted step are dropped.
        """
        self.stop_observer()
        self.machine.kill()
        self._join_worker()
        self._generation += 1
        self._in_flight = None
        return self.machine.abort(delete_remote=delete_remote)

    def complete(self) -> Result[HistoryEntry | None, ReleaseError]:
        self.stop_observer()
        return self.machine.complete()

    # -- pipeline observation ----------------------------------------------

    def start_observer(self) -> bool:
        """Observe the created merge request while the release waits for the root push."""
        state = self.machine.state
        if state.current_step != ReleaseStep.WAIT_FOR_ROOT_PUSH or not state.created_mr_iid:
            return False
        if self._observer is None and self._observer_factory is not None:
            self._observer = self._observer_factory(
                state, lambda status: self.post(PipelineStatusUpdated(status))
            )
        if self._observer is None:
            return False
        return self._observer.start()

    def stop_observer(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()

    def close(self) -> None:
        self.stop_observer()
        self.machine.kill()
        self._join_worker()
