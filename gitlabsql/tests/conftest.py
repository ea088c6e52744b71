"""Shared fixtures: resolved settings, sample GitLab payloads, an in-memory client."""
from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import pytest
from multidict import CIMultiDict, CIMultiDictProxy
from yarl import URL

from gitlabsql.client.gitlab import ListOptions, PageInfo
from gitlabsql.config.models import GITLAB_CLOUD_API_URL, GitLabSettings


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def make_user(uid: int, username: str) -> Dict[str, Any]:
    return {"id": uid, "username": username, "name": username.title(), "state": "active"}


def make_project(pid: int, **overrides: Any) -> Dict[str, Any]:
    project = {
        "id": pid,
        "name": f"project-{pid}",
        "path": f"project-{pid}",
        "description": f"Project number {pid}",
        "default_branch": "main",
        "name_with_namespace": f"Acme / project-{pid}",
        "path_with_namespace": f"acme/project-{pid}",
        "visibility": "private",
        "web_url": f"https://gitlab.example.com/acme/project-{pid}",
        "tag_list": ["backend"],
        "issues_enabled": True,
        "open_issues_count": pid % 7,
        "merge_requests_enabled": True,
        "jobs_enabled": True,
        "wiki_enabled": False,
        "snippets_enabled": False,
        "container_registry_enabled": True,
        "creator_id": 11,
        "created_at": "2023-01-15T09:30:00.000Z",
        "last_activity_at": "2024-02-01T12:00:00.000Z",
        "marked_for_deletion_at": None,
        "empty_repo": False,
        "archived": False,
        "avatar_url": None,
        "forks_count": 2,
        "star_count": 5,
        "lfs_enabled": True,
        "request_access_enabled": False,
        "packages_enabled": True,
        "owner": None,
        "namespace": {"id": 90, "full_path": "acme", "kind": "group"},
    }
    project.update(overrides)
    return project


def make_issue(iid: int, project_id: int = 3, **overrides: Any) -> Dict[str, Any]:
    issue = {
        "id": 1000 + iid,
        "iid": iid,
        "project_id": project_id,
        "title": f"Issue {iid}",
        "description": "Something is broken",
        "state": "opened",
        "external_id": None,
        "author": make_user(21, "alice"),
        "created_at": "2024-03-01T08:00:00.000Z",
        "updated_at": "2024-03-02T08:00:00.000Z",
        "closed_at": None,
        "closed_by": None,
        "assignee": make_user(22, "bob"),
        "assignees": [make_user(22, "bob"), make_user(23, "carol")],
        "labels": ["bug"],
        "upvotes": 1,
        "downvotes": 0,
        "due_date": "2024-05-01",
        "web_url": f"https://gitlab.example.com/acme/project-{project_id}/-/issues/{iid}",
        "confidential": False,
        "discussion_locked": None,
    }
    issue.update(overrides)
    return issue


def not_found(url: str = "https://gitlab.example.com/api/v4/projects/404") -> aiohttp.ClientResponseError:
    request_info = aiohttp.RequestInfo(
        url=URL(url), method="GET",
        headers=CIMultiDictProxy(CIMultiDict()), real_url=URL(url),
    )
    return aiohttp.ClientResponseError(
        request_info, (), status=404, message="404 Project Not Found"
    )


# ---------------------------------------------------------------------------
# In-memory client
# ---------------------------------------------------------------------------

class FakeGitLabClient:
    """
    Stands in for GitLabClient. `pages` maps an endpoint key ("projects",
    "issues", "projects/3/issues") to a list of pages; page N links to N+1
    until the last page, which reports next_page 0.

    Every call is recorded in `calls` as (endpoint key, snapshot of options).
    """

    def __init__(
        self,
        pages: Optional[Dict[str, List[List[Dict[str, Any]]]]] = None,
        projects: Optional[Dict[int, Dict[str, Any]]] = None,
        fail_on_page: Optional[int] = None,
    ) -> None:
        self.pages = pages or {}
        self.projects = projects or {}
        self.fail_on_page = fail_on_page
        self.calls: List[Tuple[str, Any]] = []
        self.closed = False

    async def __aenter__(self) -> "FakeGitLabClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.closed = True

    def _page(self, key: str, opts: ListOptions):
        self.calls.append((key, opts.model_copy()))
        if self.fail_on_page == opts.page:
            raise not_found()
        pages = self.pages.get(key, [[]])
        items = pages[opts.page - 1] if opts.page <= len(pages) else []
        next_page = opts.page + 1 if opts.page < len(pages) else 0
        return items, PageInfo(page=opts.page, per_page=opts.per_page, next_page=next_page)

    async def list_projects(self, opts):
        return self._page("projects", opts)

    async def list_issues(self, opts):
        return self._page("issues", opts)

    async def list_project_issues(self, project_id, opts):
        return self._page(f"projects/{project_id}/issues", opts)

    async def get_project(self, project_id):
        self.calls.append(("project", project_id))
        if project_id not in self.projects:
            raise not_found(f"https://gitlab.example.com/api/v4/projects/{project_id}")
        return self.projects[project_id]


class FakeClientFactory:
    """client_factory that hands out one shared FakeGitLabClient and counts connects."""

    def __init__(self, client: FakeGitLabClient) -> None:
        self.client = client
        self.connects = 0

    def __call__(self, settings: GitLabSettings) -> FakeGitLabClient:
        self.connects += 1
        return self.client


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> GitLabSettings:
    return GitLabSettings(base_url="https://gitlab.example.com/api/v4", token="glpat-test")


@pytest.fixture
def cloud_settings() -> GitLabSettings:
    return GitLabSettings(base_url=GITLAB_CLOUD_API_URL, token="glpat-test")
