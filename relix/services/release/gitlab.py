"""Code-host client for the few GitLab endpoints a release needs.

This module provides:
- CodeHostClient: Protocol the release machine and pipeline observer use
- GitLabClient: implementation over the GitLab REST API v4 using urllib

Every call returns Ok(typed value) or Err(ApiError); `ApiError.kind` tells a
missing resource apart from a network failure or rejected credentials.
"""

from __future__ import annotations

import json
import ssl
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Literal, Protocol

from relix import __version__
from relix.core.result import Err, Ok, Result
from relix.core.structured import (
    StrDict,
    as_obj_list,
    as_str_dict,
    get_int,
    get_raw_str,
    get_table,
)

__all__ = [
    "ApiError",
    "CodeHostClient",
    "CreatedMergeRequest",
    "GitLabClient",
    "MergeRequest",
    "MergeRequestStatus",
    "Pipeline",
    "PipelineJob",
]

DEFAULT_TIMEOUT_SECONDS = 10.0

ApiErrorKind = Literal["not_found", "auth", "network", "http", "invalid"]


@dataclass(frozen=True, slots=True)
class ApiError:
    """Code-host API failure.

    Attributes:
        kind: not_found (404), auth (401/403), network (no response),
            http (other statuses), invalid (unexpected payload)
        message: Human-readable error message
        url: The URL that failed
        status: HTTP status code (0 when there was no response)
    """

    kind: ApiErrorKind
    message: str
    url: str = ""
    status: int = 0

    def __str__(self) -> str:
        if self.status:
            return f"HTTP {self.status}: {self.message}"
        return self.message


@dataclass(frozen=True, slots=True)
class MergeRequestStatus:
    iid: int
    state: str
    merge_commit_sha: str = ""
    web_url: str = ""

    @property
    def is_merged(self) -> bool:
        return self.state == "merged"


@dataclass(frozen=True, slots=True)
class MergeRequest:
    """An open merge request, as offered for a release."""

    iid: int
    title: str
    source_branch: str
    target_branch: str
    web_url: str = ""
    sha: str = ""
    author: str = ""
    state: str = ""


@dataclass(frozen=True, slots=True)
class Pipeline:
    id: int
    status: str
    web_url: str = ""
    sha: str = ""


@dataclass(frozen=True, slots=True)
class PipelineJob:
    id: int
    name: str
    status: str
    stage: str = ""


@dataclass(frozen=True, slots=True)
class CreatedMergeRequest:
    iid: int
    web_url: str


class CodeHostClient(Protocol):
    def list_merge_requests(self, project_id: int) -> Result[list[MergeRequest], ApiError]: ...

    def get_merge_request(
        self, project_id: int, mr_iid: int
    ) -> Result[MergeRequest, ApiError]: ...

    def get_merge_request_status(
        self, project_id: int, mr_iid: int
    ) -> Result[MergeRequestStatus, ApiError]: ...

    def get_pipelines_by_commit(
        self, project_id: int, sha: str
    ) -> Result[list[Pipeline], ApiError]: ...

    def get_merge_request_pipelines(
        self, project_id: int, mr_iid: int
    ) -> Result[list[Pipeline], ApiError]: ...

    def get_pipeline_jobs(
        self, project_id: int, pipeline_id: int
    ) -> Result[list[PipelineJob], ApiError]: ...

    def create_merge_request(
        self,
        project_id: int,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str,
    ) -> Result[CreatedMergeRequest, ApiError]: ...


def _parse_merge_request(d: StrDict) -> MergeRequest:
    author = get_table(d, "author") or {}
    return MergeRequest(
        iid=get_int(d, "iid") or 0,
        title=get_raw_str(d, "title"),
        source_branch=get_raw_str(d, "source_branch"),
        target_branch=get_raw_str(d, "target_branch"),
        web_url=get_raw_str(d, "web_url"),
        sha=get_raw_str(d, "sha"),
        author=get_raw_str(author, "username"),
        state=get_raw_str(d, "state"),
    )


def _parse_pipeline(d: StrDict) -> Pipeline:
    return Pipeline(
        id=get_int(d, "id") or 0,
        status=get_raw_str(d, "status"),
        web_url=get_raw_str(d, "web_url"),
        sha=get_raw_str(d, "sha"),
    )


def _parse_job(d: StrDict) -> PipelineJob:
    return PipelineJob(
        id=get_int(d, "id") or 0,
        name=get_raw_str(d, "name"),
        status=get_raw_str(d, "status"),
        stage=get_raw_str(d, "stage"),
    )


class GitLabClient:
    """GitLab REST v4 client authenticated with a private token."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = f"relix/{__version__}",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._token = token
        self._user_agent = user_agent
        self._ssl_context = ssl.create_default_context()

    def _url(self, path: str, query: dict[str, str] | None = None) -> str:
        url = f"{self.base_url}/api/v4{path}"
        if query:
            url += "?" + urllib.parse.urlencode(query)
        return url

    def _request(
        self,
        method: str,
        url: str,
        body: dict[str, object] | None = None,
    ) -> Result[object, ApiError]:
        headers = {
            "PRIVATE-TOKEN": self._token,
            "User-Agent": self._user_agent,
            "Accept": "application/json",
        }
        data: bytes | None = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        try:
            req = urllib.request.Request(url, data=data, headers=headers, method=method)
            with urllib.request.urlopen(
                req, timeout=self.timeout, context=self._ssl_context
            ) as response:
                raw = response.read()
        except urllib.error.HTTPError as e:
            if e.code == 404:
                return Err(ApiError("not_found", "not found", url=url, status=404))
            if e.code in (401, 403):
                return Err(
                    ApiError("auth", "authentication failed (check the token)", url=url, status=e.code)
                )
            return Err(ApiError("http", str(e.reason), url=url, status=e.code))
        except urllib.error.URLError as e:
            return Err(ApiError("network", str(e.reason), url=url))
        except TimeoutError:
            return Err(ApiError("network", "request timed out", url=url))
        except OSError as e:
            return Err(ApiError("network", str(e), url=url))

        try:
            return Ok(json.loads(raw.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return Err(ApiError("invalid", f"JSON parse error: {e}", url=url))

    def _get_object(self, url: str) -> Result[StrDict, ApiError]:
        result = self._request("GET", url)
        if isinstance(result, Err):
            return result
        d = as_str_dict(result.value)
        if d is None:
            return Err(ApiError("invalid", "expected a JSON object", url=url))
        return Ok(d)

    def _get_objects(self, url: str) -> Result[list[StrDict], ApiError]:
        result = self._request("GET", url)
        if isinstance(result, Err):
            return result
        items = as_obj_list(result.value)
        if items is None:
            return Err(ApiError("invalid", "expected a JSON array", url=url))
        return Ok([d for d in (as_str_dict(item) for item in items) if d is not None])

    def list_merge_requests(self, project_id: int) -> Result[list[MergeRequest], ApiError]:
        """Open merge requests of the project, newest first."""
        url = self._url(
            f"/projects/{project_id}/merge_requests",
            {"state": "opened", "per_page": "100"},
        )
        return self._get_objects(url).map(lambda items: [_parse_merge_request(d) for d in items])

    def get_merge_request(self, project_id: int, mr_iid: int) -> Result[MergeRequest, ApiError]:
        url = self._url(f"/projects/{project_id}/merge_requests/{mr_iid}")
        return self._get_object(url).map(_parse_merge_request)

    def get_merge_request_status(
        self, project_id: int, mr_iid: int
    ) -> Result[MergeRequestStatus, ApiError]:
        url = self._url(f"/projects/{project_id}/merge_requests/{mr_iid}")
        return self._get_object(url).map(
            lambda d: MergeRequestStatus(
                iid=get_int(d, "iid") or mr_iid,
                state=get_raw_str(d, "state"),
                merge_commit_sha=get_raw_str(d, "merge_commit_sha"),
                web_url=get_raw_str(d, "web_url"),
            )
        )

    def get_pipelines_by_commit(self, project_id: int, sha: str) -> Result[list[Pipeline], ApiError]:
        url = self._url(
            f"/projects/{project_id}/pipelines",
            {"sha": sha, "order_by": "id", "sort": "desc"},
        )
        return self._get_objects(url).map(lambda items: [_parse_pipeline(d) for d in items])

    def get_merge_request_pipelines(
        self, project_id: int, mr_iid: int
    ) -> Result[list[Pipeline], ApiError]:
        url = self._url(f"/projects/{project_id}/merge_requests/{mr_iid}/pipelines")
        return self._get_objects(url).map(lambda items: [_parse_pipeline(d) for d in items])

    def get_pipeline_jobs(
        self, project_id: int, pipeline_id: int
    ) -> Result[list[PipelineJob], ApiError]:
        url = self._url(
            f"/projects/{project_id}/pipelines/{pipeline_id}/jobs",
            {"per_page": "100"},
        )
        return self._get_objects(url).map(lambda items: [_parse_job(d) for d in items])

    def create_merge_request(
        self,
        project_id: int,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str,
    ) -> Result[CreatedMergeRequest, ApiError]:
        url = self._url(f"/projects/{project_id}/merge_requests")
        result = self._request(
            "POST",
            url,
            {
                "source_branch": source_branch,
                "target_branch": target_branch,
                "title": title,
                "description": description,
            },
        )
        if isinstance(result, Err):
            return result
        d = as_str_dict(result.value)
        if d is None or get_int(d, "iid") is None:
            return Err(ApiError("invalid", "unexpected merge request response", url=url))
        return Ok(CreatedMergeRequest(iid=get_int(d, "iid") or 0, web_url=get_raw_str(d, "web_url")))
