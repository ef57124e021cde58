"""Tests for deployment pipeline tracking."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field

from relix.core.config import Config, EnvironmentConfig, PipelineConfig
from relix.core.result import Err, Ok, Result
from relix.platform.notify import MockNotifier
from relix.services.release.gitlab import (
    ApiError,
    CreatedMergeRequest,
    MergeRequest,
    MergeRequestStatus,
    Pipeline,
    PipelineJob,
)
from relix.services.release.pipeline import (
    JobFilter,
    PipelineObserver,
    PipelineStage,
    PipelineStatus,
    derive_stage,
    fetch_pipeline_status,
)

DEVELOP = EnvironmentConfig(name="DEVELOP", branch="develop", job_suffix="dev01")
JOBS_REGEX = r"(?i)Deploy Application (Main|Admin) (to )?(dev|test)01"


def job(name: str, status: str, job_id: int = 1) -> PipelineJob:
    return PipelineJob(id=job_id, name=name, status=status)


@dataclass
class FakeClient:
    state: str = "merged"
    merge_commit_sha: str = "abc"
    by_commit: list[Pipeline] = field(default_factory=list)
    by_mr: list[Pipeline] = field(default_factory=list)
    jobs: list[PipelineJob] = field(default_factory=list)
    mr_error: ApiError | None = None
    jobs_error: ApiError | None = None
    calls: int = 0

    def list_merge_requests(self, project_id: int) -> Result[list[MergeRequest], ApiError]:
        raise AssertionError("not used")

    def get_merge_request(self, project_id: int, mr_iid: int) -> Result[MergeRequest, ApiError]:
        raise AssertionError("not used")

    def get_merge_request_status(
        self, project_id: int, mr_iid: int
    ) -> Result[MergeRequestStatus, ApiError]:
        self.calls += 1
        if self.mr_error is not None:
            return Err(self.mr_error)
        return Ok(MergeRequestStatus(iid=mr_iid, state=self.state, merge_commit_sha=self.merge_commit_sha))

    def get_pipelines_by_commit(self, project_id: int, sha: str) -> Result[list[Pipeline], ApiError]:
        return Ok(list(self.by_commit))

    def get_merge_request_pipelines(
        self, project_id: int, mr_iid: int
    ) -> Result[list[Pipeline], ApiError]:
        return Ok(list(self.by_mr))

    def get_pipeline_jobs(
        self, project_id: int, pipeline_id: int
    ) -> Result[list[PipelineJob], ApiError]:
        if self.jobs_error is not None:
            return Err(self.jobs_error)
        return Ok(list(self.jobs))

    def create_merge_request(
        self,
        project_id: int,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str,
    ) -> Result[CreatedMergeRequest, ApiError]:
        raise AssertionError("not used")


def dev_filter() -> JobFilter:
    return JobFilter.for_environment(JOBS_REGEX, DEVELOP)


# =============================================================================
# Job filter / stage derivation
# =============================================================================


class TestJobFilter:
    def test_matches_environment_jobs_only(self) -> None:
        f = dev_filter()
        assert f.matches("Deploy Application Main to dev01")
        assert not f.matches("Deploy Application Main to test01")
        assert not f.matches("unit tests dev01")

    def test_environment_without_suffix_matches_nothing(self) -> None:
        f = JobFilter.for_environment(JOBS_REGEX, EnvironmentConfig(name="QA", branch="qa"))
        assert f.env_suffix == ""
        assert not f.matches("Deploy Application Main to dev01")

    def test_suffix_comes_from_well_known_branch(self) -> None:
        f = JobFilter(pattern=re.compile(JOBS_REGEX), env_suffix="")
        assert not f.matches("Deploy Application Main to dev01")
        env = EnvironmentConfig(name="TEST", branch="testing")
        assert JobFilter.for_environment(JOBS_REGEX, env).env_suffix == "test01"


class TestDeriveStage:
    def test_no_jobs(self) -> None:
        stage, counts = derive_stage([])
        assert stage == PipelineStage.WAITING_FOR_START
        assert counts.total == 0

    def test_only_manual_jobs(self) -> None:
        stage, _ = derive_stage([job("a", "manual"), job("b", "manual")])
        assert stage == PipelineStage.WAITING_FOR_START

    def test_jobs_not_yet_scheduled(self) -> None:
        stage, counts = derive_stage([job("a", "created"), job("b", "skipped"), job("c", "manual")])
        assert stage == PipelineStage.WAITING_FOR_START
        assert counts.total == 3

    def test_failed_wins_over_running(self) -> None:
        stage, counts = derive_stage([job("a", "failed"), job("b", "running")])
        assert stage == PipelineStage.FAILED
        assert counts.failed == 1
        assert counts.running == 1

    def test_canceled_counts_as_failed(self) -> None:
        stage, _ = derive_stage([job("a", "success"), job("b", "canceled")])
        assert stage == PipelineStage.FAILED

    def test_all_success(self) -> None:
        stage, counts = derive_stage([job("a", "success"), job("b", "success")])
        assert stage == PipelineStage.COMPLETED
        assert counts.completed == 2

    def test_partial_success_is_running(self) -> None:
        stage, _ = derive_stage([job("a", "success"), job("b", "pending")])
        assert stage == PipelineStage.RUNNING


# =============================================================================
# Single poll
# =============================================================================


class TestFetchPipelineStatus:
    def test_unmerged_merge_request(self) -> None:
        client = FakeClient(state="opened")
        status = fetch_pipeline_status(client, 42, 17, dev_filter())
        assert status.stage == PipelineStage.WAITING_FOR_MERGE
        assert status.mr_merged is False

    def test_merged_without_pipeline(self) -> None:
        status = fetch_pipeline_status(FakeClient(), 42, 17, dev_filter())
        assert status.stage == PipelineStage.WAITING_FOR_START
        assert status.mr_merged is True

    def test_no_matching_jobs_waits_for_start(self) -> None:
        client = FakeClient(
            by_commit=[Pipeline(id=5, status="running")],
            jobs=[job("lint", "success"), job("Deploy Application Main to test01", "running")],
        )
        status = fetch_pipeline_status(client, 42, 17, dev_filter())
        assert status.stage == PipelineStage.WAITING_FOR_START
        assert status.pipeline_id == 5

    def test_latest_pipeline_is_used(self) -> None:
        client = FakeClient(
            by_commit=[Pipeline(id=5, status="failed"), Pipeline(id=9, status="running", web_url="u9")],
            jobs=[job("Deploy Application Main to dev01", "success")],
        )
        status = fetch_pipeline_status(client, 42, 17, dev_filter())
        assert status.pipeline_id == 9
        assert status.pipeline_url == "u9"
        assert status.stage == PipelineStage.COMPLETED

    def test_falls_back_to_merge_request_pipelines(self) -> None:
        client = FakeClient(
            by_mr=[Pipeline(id=3, status="running")],
            jobs=[job("Deploy Application Admin dev01", "running")],
        )
        status = fetch_pipeline_status(client, 42, 17, dev_filter())
        assert status.pipeline_id == 3
        assert status.stage == PipelineStage.RUNNING

    def test_request_error_keeps_previous_stage(self) -> None:
        previous = PipelineStatus(stage=PipelineStage.RUNNING, mr_merged=True, pipeline_id=3)
        client = FakeClient(mr_error=ApiError("network", "connection refused"))

        status = fetch_pipeline_status(client, 42, 17, dev_filter(), previous)

        assert status.stage == PipelineStage.RUNNING
        assert status.pipeline_id == 3
        assert status.check_failed is True

    def test_jobs_error_is_recorded(self) -> None:
        client = FakeClient(
            by_commit=[Pipeline(id=5, status="running")],
            jobs_error=ApiError("http", "bad gateway", status=502),
        )
        status = fetch_pipeline_status(client, 42, 17, dev_filter())
        assert status.stage == PipelineStage.LOADING
        assert status.pipeline_id == 5
        assert status.error is not None and status.error.status == 502


# =============================================================================
# Observer
# =============================================================================


def observer(client: FakeClient, notifier: MockNotifier, seen: list[PipelineStatus]) -> PipelineObserver:
    return PipelineObserver(
        client,
        project_id=42,
        mr_iid=17,
        job_filter=dev_filter(),
        title="Release 2.0.0 (DEVELOP)",
        notifier=notifier,
        on_status=seen.append,
        interval=0.01,
    )


class TestPipelineObserver:
    def test_failure_notifies_once_per_episode(self) -> None:
        client = FakeClient(
            by_commit=[Pipeline(id=5, status="failed")],
            jobs=[job("Deploy Application Main to dev01", "failed")],
        )
        notifier = MockNotifier()
        seen: list[PipelineStatus] = []
        obs = observer(client, notifier, seen)

        obs.poll_once()
        obs.poll_once()
        assert [n.message for n in notifier.sent] == ["Deployment failed (1 job(s))"]

        client.jobs = [job("Deploy Application Main to dev01", "running")]
        obs.poll_once()
        client.jobs = [job("Deploy Application Main to dev01", "failed")]
        obs.poll_once()

        assert len(notifier.sent) == 2
        assert len(seen) == 4

    def test_completion_notifies_once(self) -> None:
        client = FakeClient(
            by_commit=[Pipeline(id=5, status="success")],
            jobs=[job("Deploy Application Main to dev01", "success")],
        )
        notifier = MockNotifier()
        obs = observer(client, notifier, [])

        obs.poll_once()
        obs.poll_once()

        assert [n.message for n in notifier.sent] == ["Deployment completed"]
        assert notifier.sent[0].title == "Release 2.0.0 (DEVELOP)"

    def test_background_polling_stops_on_completion(self) -> None:
        client = FakeClient(
            by_commit=[Pipeline(id=5, status="success")],
            jobs=[job("Deploy Application Main to dev01", "success")],
        )
        seen: list[PipelineStatus] = []
        obs = observer(client, MockNotifier(), seen)

        assert obs.start() is True
        deadline = time.monotonic() + 5.0
        while obs.is_observing and time.monotonic() < deadline:
            time.sleep(0.01)
        obs.stop()

        assert not obs.is_observing
        assert obs.status.stage == PipelineStage.COMPLETED
        assert client.calls == 1

    def test_start_twice_and_stop_twice(self) -> None:
        client = FakeClient(state="opened")
        obs = observer(client, MockNotifier(), [])

        assert obs.start() is True
        assert obs.start() is False
        obs.stop()
        obs.stop()
        assert not obs.is_observing

    def test_for_release_uses_config(self) -> None:
        config = Config(pipeline=PipelineConfig(jobs_regex=JOBS_REGEX, poll_interval=0.5))
        obs = PipelineObserver.for_release(
            FakeClient(state="opened"),
            config,
            project_id=42,
            mr_iid=17,
            environment=DEVELOP,
            version="2.0.0",
        )
        status = obs.poll_once()
        assert status.stage == PipelineStage.WAITING_FOR_MERGE
