from __future__ import annotations

import threading
from dataclasses import dataclass, field

from relix.output.console import ConsoleProtocol, Style
from relix.services.release.events import (
    CommandStarted,
    MRCreated,
    PipelineStatusUpdated,
    ReleaseEvent,
    ScreenUpdated,
    StepCompleted,
    StepStarted,
)
from relix.services.release.loop import ReleaseLoop
from relix.services.release.pipeline import PipelineStage, PipelineStatus
from relix.services.release.state import ReleaseState
from relix.services.release.steps import ReleaseStep


def format_pipeline(status: PipelineStatus) -> str:
    jobs = status.jobs
    text = f"pipeline: {status.stage.label}"
    if status.stage in (PipelineStage.RUNNING, PipelineStage.COMPLETED, PipelineStage.FAILED):
        text += f" ({jobs.completed}/{jobs.total} done, {jobs.running} running, {jobs.failed} failed)"
    if status.pipeline_url:
        text += f" {status.pipeline_url}"
    if status.error is not None:
        text += f" [last check failed: {status.error}]"
    return text


def print_state(state: ReleaseState, console: ConsoleProtocol) -> None:
    console.header(f"Release {state.version} -> {state.environment.name} ({state.environment.branch})")
    console.print(f"source branch: {state.source}", Style.DIM)
    console.print(f"release branch: {state.env_release_branch}", Style.DIM)
    for i, branch in enumerate(state.mr_branches):
        mark = "x" if branch in state.merged_branches else " "
        url = state.mr_urls[i] if i < len(state.mr_urls) else ""
        console.print(f"  [{mark}] {branch} {url}".rstrip())
    console.print(
        f"step: {state.current_step.label} ({state.progress_percent}%, "
        f"{state.completed_sub_steps}/{state.total_sub_steps})"
    )
    if state.created_mr_url:
        console.print(f"merge request: {state.created_mr_url}")
    if state.tag_name:
        console.print(f"tag: {state.tag_name}", Style.DIM)


def next_action_hint(state: ReleaseState) -> str | None:
    if state.last_error is not None:
        return "relix retry, or relix abort"
    match state.current_step:
        case ReleaseStep.WAIT_FOR_MR:
            return "review the release branch, then: relix create-mr"
        case ReleaseStep.WAIT_FOR_ROOT_PUSH:
            return "merge the release merge request, then: relix push-root"
        case ReleaseStep.COMPLETE:
            return "relix complete"
        case _:
            return None


@dataclass
class ReleaseView:
    """Prints loop events; the newest screen is flushed when a command ends."""

    console: ConsoleProtocol
    show_pipeline: bool = True
    _screen: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _last_pipeline: str = ""

    def __call__(self, event: ReleaseEvent) -> None:
        match event:
            case StepStarted(step=step):
                self.console.header(step.label)
            case CommandStarted(command=command):
                self._flush()
                self.console.print(f"$ {command}", Style.DIM)
            case ScreenUpdated(screen=screen):
                with self._lock:
                    self._screen = screen
            case StepCompleted(step=step, failure=None):
                self._flush()
                self.console.success(step.label)
            case StepCompleted(step=step):
                self._flush()
            case MRCreated(url=url):
                self._flush()
                self.console.success(f"merge request created: {url}")
            case PipelineStatusUpdated(status=status) if self.show_pipeline:
                line = format_pipeline(status)
                if line != self._last_pipeline:
                    self._last_pipeline = line
                    self.console.print(line, Style.INFO)
            case _:
                pass

    def _flush(self) -> None:
        with self._lock:
            screen, self._screen = self._screen, ""
        if screen:
            self.console.screen(screen)


@dataclass
class EventRelay:
    """Forwards runner-thread events into a loop created after the runner."""

    loop: ReleaseLoop | None = None

    def post(self, event: ReleaseEvent) -> None:
        if self.loop is not None:
            self.loop.post(event)
