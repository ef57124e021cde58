"""Deployment pipeline tracking for the created merge request.

`fetch_pipeline_status` performs one poll: merge request state, then the
pipeline of the merge commit, then its jobs filtered down to the deployment
jobs of the release environment. `PipelineObserver` repeats that poll on a
background thread until the deployment completes or it is stopped.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from enum import Enum

from relix.core.config import Config, EnvironmentConfig
from relix.core.result import Err
from relix.platform.notify import NotificationSink
from relix.services.release.gitlab import ApiError, CodeHostClient, Pipeline, PipelineJob

__all__ = [
    "JobCounts",
    "JobFilter",
    "PipelineObserver",
    "PipelineStage",
    "PipelineStatus",
    "derive_stage",
    "fetch_pipeline_status",
]

_SUCCESS_STATES = frozenset({"success"})
_FAILED_STATES = frozenset({"failed", "canceled"})
_ACTIVE_STATES = frozenset({"running", "pending", "preparing", "waiting_for_resource"})


class PipelineStage(Enum):
    LOADING = "loading"
    WAITING_FOR_MERGE = "waiting_for_merge"
    WAITING_FOR_START = "waiting_for_start"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


@dataclass(frozen=True, slots=True)
class JobCounts:
    total: int = 0
    completed: int = 0
    failed: int = 0
    running: int = 0
    manual: int = 0


@dataclass(frozen=True, slots=True)
class PipelineStatus:
    """Latest observation; `error` is set when the last poll failed."""

    stage: PipelineStage = PipelineStage.LOADING
    mr_merged: bool = False
    pipeline_id: int = 0
    pipeline_url: str = ""
    pipeline_state: str = ""
    jobs: JobCounts = JobCounts()
    error: ApiError | None = None

    @property
    def check_failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True, slots=True)
class JobFilter:
    """Selects the deployment jobs of one environment.

    A job counts when its name matches `pattern` and contains the
    environment's job suffix; an environment without a suffix counts none.
    """

    pattern: re.Pattern[str]
    env_suffix: str

    @classmethod
    def for_environment(cls, jobs_regex: str, environment: EnvironmentConfig) -> JobFilter:
        return cls(pattern=re.compile(jobs_regex), env_suffix=environment.effective_job_suffix)

    def matches(self, job_name: str) -> bool:
        if not self.env_suffix:
            return False
        if self.env_suffix.lower() not in job_name.lower():
            return False
        return self.pattern.search(job_name) is not None


def derive_stage(jobs: Sequence[PipelineJob]) -> tuple[PipelineStage, JobCounts]:
    """Stage of an already-filtered job list.

    - no jobs, or none started yet (created, manual, skipped): WAITING_FOR_START
    - any failed or canceled: FAILED
    - all succeeded: COMPLETED
    - otherwise RUNNING
    """
    counts = JobCounts(
        total=len(jobs),
        completed=sum(1 for j in jobs if j.status in _SUCCESS_STATES),
        failed=sum(1 for j in jobs if j.status in _FAILED_STATES),
        running=sum(1 for j in jobs if j.status in _ACTIVE_STATES),
        manual=sum(1 for j in jobs if j.status == "manual"),
    )
    if counts.total == 0 or counts.completed == counts.failed == counts.running == 0:
        return PipelineStage.WAITING_FOR_START, counts
    if counts.failed > 0:
        return PipelineStage.FAILED, counts
    if counts.completed == counts.total:
        return PipelineStage.COMPLETED, counts
    return PipelineStage.RUNNING, counts


def _latest(pipelines: Sequence[Pipeline]) -> Pipeline | None:
    return max(pipelines, key=lambda p: p.id, default=None)


def fetch_pipeline_status(
    client: CodeHostClient,
    project_id: int,
    mr_iid: int,
    job_filter: JobFilter,
    previous: PipelineStatus | None = None,
) -> PipelineStatus:
    """Poll once. A failed request keeps `previous` and records the error."""
    prev = previous or PipelineStatus()

    mr = client.get_merge_request_status(project_id, mr_iid)
    if isinstance(mr, Err):
        return replace(prev, error=mr.error)
    if not mr.value.is_merged:
        return PipelineStatus(stage=PipelineStage.WAITING_FOR_MERGE)

    pipelines: list[Pipeline] = []
    if mr.value.merge_commit_sha:
        by_commit = client.get_pipelines_by_commit(project_id, mr.value.merge_commit_sha)
        if not isinstance(by_commit, Err):
            pipelines = by_commit.value
    if not pipelines:
        by_mr = client.get_merge_request_pipelines(project_id, mr_iid)
        if isinstance(by_mr, Err):
            return replace(prev, mr_merged=True, error=by_mr.error)
        pipelines = by_mr.value

    pipeline = _latest(pipelines)
    if pipeline is None:
        return PipelineStatus(stage=PipelineStage.WAITING_FOR_START, mr_merged=True)

    jobs = client.get_pipeline_jobs(project_id, pipeline.id)
    if isinstance(jobs, Err):
        return replace(
            prev,
            mr_merged=True,
            pipeline_id=pipeline.id,
            pipeline_url=pipeline.web_url,
            pipeline_state=pipeline.status,
            error=jobs.error,
        )

    stage, counts = derive_stage([j for j in jobs.value if job_filter.matches(j.name)])
    return PipelineStatus(
        stage=stage,
        mr_merged=True,
        pipeline_id=pipeline.id,
        pipeline_url=pipeline.web_url,
        pipeline_state=pipeline.status,
        jobs=counts,
    )


class PipelineObserver:
    """Polls one merge request's deployment on a background thread.

    Notifications go out once when the deployment completes and once per
    failed episode; a failure notifies again only after the stage has left
    FAILED. Reaching COMPLETED stops the polling.
    """

    def __init__(
        self,
        client: CodeHostClient,
        *,
        project_id: int,
        mr_iid: int,
        job_filter: JobFilter,
        title: str = "Release",
        notifier: NotificationSink | None = None,
        on_status: Callable[[PipelineStatus], None] | None = None,
        interval: float = 7.0,
    ) -> None:
        self._client = client
        self._project_id = project_id
        self._mr_iid = mr_iid
        self._filter = job_filter
        self._title = title
        self._notifier = notifier
        self._on_status = on_status
        self._interval = interval

        self._lock = threading.Lock()
        self._status = PipelineStatus()
        self._failure_notified = False
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @classmethod
    def for_release(
        cls,
        client: CodeHostClient,
        config: Config,
        *,
        project_id: int,
        mr_iid: int,
        environment: EnvironmentConfig,
        version: str,
        notifier: NotificationSink | None = None,
        on_status: Callable[[PipelineStatus], None] | None = None,
    ) -> PipelineObserver:
        return cls(
            client,
            project_id=project_id,
            mr_iid=mr_iid,
            job_filter=JobFilter.for_environment(config.pipeline.jobs_regex, environment),
            title=f"Release {version} ({environment.name})",
            notifier=notifier,
            on_status=on_status,
            interval=config.pipeline.poll_interval,
        )

    @property
    def status(self) -> PipelineStatus:
        with self._lock:
            return self._status

    @property
    def is_observing(self) -> bool:
        with self._lock:
            return self._stop_event is not None and not self._stop_event.is_set()

    def start(self) -> bool:
        """Start polling; False when already observing."""
        with self._lock:
            if self._stop_event is not None and not self._stop_event.is_set():
                return False
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._status = PipelineStatus()
            self._failure_notified = False
            thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name="relix-pipeline",
                daemon=True,
            )
            self._thread = thread
        thread.start()
        return True

    def stop(self) -> None:
        with self._lock:
            stop_event, self._stop_event = self._stop_event, None
            thread, self._thread = self._thread, None
        if stop_event is not None:
            stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._client_timeout())

    def poll_once(self) -> PipelineStatus:
        """Poll synchronously and publish the result."""
        status = fetch_pipeline_status(
            self._client, self._project_id, self._mr_iid, self._filter, self.status
        )
        self._publish(status)
        return status

    def _client_timeout(self) -> float:
        return getattr(self._client, "timeout", 10.0) * 3 + 1.0

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            status = fetch_pipeline_status(
                self._client, self._project_id, self._mr_iid, self._filter, self.status
            )
            if stop_event.is_set():
                return
            self._publish(status)
            if status.stage == PipelineStage.COMPLETED:
                stop_event.set()
                return
            stop_event.wait(self._interval)

    def _publish(self, status: PipelineStatus) -> None:
        notify: tuple[str, str] | None = None
        with self._lock:
            previous = self._status.stage
            self._status = status
            if status.stage == PipelineStage.COMPLETED and previous != PipelineStage.COMPLETED:
                notify = (self._title, "Deployment completed")
            if status.stage == PipelineStage.FAILED:
                if not self._failure_notified:
                    self._failure_notified = True
                    notify = (self._title, f"Deployment failed ({status.jobs.failed} job(s))")
            else:
                self._failure_notified = False

        if notify is not None and self._notifier is not None:
            self._notifier.notify(*notify)
        if self._on_status is not None:
            self._on_status(status)
