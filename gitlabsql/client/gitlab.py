from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote

import aiohttp
from opentelemetry import trace
from pydantic import BaseModel

from gitlabsql.config.models import DEFAULT_PAGE_SIZE, GitLabSettings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("gitlabsql.client")


# ---------------------------------------------------------------------------
# Request options
# ---------------------------------------------------------------------------

class ListOptions(BaseModel):
    """Pagination parameters shared by every GitLab list endpoint."""

    page: int = 1
    per_page: int = DEFAULT_PAGE_SIZE

    def to_params(self) -> Dict[str, str]:
        """Query-string params; unset filters are omitted, bools are lowercased."""
        params: Dict[str, str] = {}
        for key, value in self.model_dump(exclude_none=True).items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            params[key] = str(value)
        return params


class ListProjectsOptions(ListOptions):
    pass


class ListIssuesOptions(ListOptions):
    """
    Filters accepted by both GET /issues and GET /projects/:id/issues.
    """

    scope: Optional[str] = "all"
    assignee_username: Optional[str] = None
    assignee_id: Optional[int] = None
    author_id: Optional[int] = None
    confidential: Optional[bool] = None
    search: Optional[str] = None


# ---------------------------------------------------------------------------
# Pagination metadata
# ---------------------------------------------------------------------------

@dataclass
class PageInfo:
    """
    Pagination headers of a GitLab list response.

    next_page == 0 means there is no next page (GitLab sends an empty
    X-Next-Page header on the last page).
    """

    page: int = 0
    per_page: int = 0
    next_page: int = 0
    total: Optional[int] = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "PageInfo":
        return cls(
            page=_int_header(headers, "X-Page") or 0,
            per_page=_int_header(headers, "X-Per-Page") or 0,
            next_page=_int_header(headers, "X-Next-Page") or 0,
            total=_int_header(headers, "X-Total"),
        )


def _int_header(headers: Mapping[str, str], name: str) -> Optional[int]:
    raw = (headers.get(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class GitLabClient:
    """
    Minimal async client for the GitLab REST API v4.

    Construction never touches the network: the aiohttp session is created
    lazily on the first request. Every non-2xx response raises
    aiohttp.ClientResponseError; there is no retry.

    Use as an async context manager so the owned session is closed:

        async with GitLabClient(settings) as client:
            projects, page = await client.list_projects(ListProjectsOptions())
    """

    def __init__(
        self,
        settings: GitLabSettings,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.settings = settings
        self._session = session
        self._own_session = session is None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=10)
            )
            self._own_session = True
        return self._session

    async def close(self) -> None:
        if self._own_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "GitLabClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def list_projects(
        self, opts: ListProjectsOptions
    ) -> Tuple[List[Dict[str, Any]], PageInfo]:
        return await self._http_get("/projects", opts.to_params())

    async def get_project(self, project_id: int | str) -> Dict[str, Any]:
        body, _ = await self._http_get(f"/projects/{_path_id(project_id)}")
        return body

    async def list_issues(
        self, opts: ListIssuesOptions
    ) -> Tuple[List[Dict[str, Any]], PageInfo]:
        return await self._http_get("/issues", opts.to_params())

    async def list_project_issues(
        self, project_id: int | str, opts: ListIssuesOptions
    ) -> Tuple[List[Dict[str, Any]], PageInfo]:
        return await self._http_get(
            f"/projects/{_path_id(project_id)}/issues", opts.to_params()
        )

    # ------------------------------------------------------------------
    # HTTP transport
    # ------------------------------------------------------------------

    def _auth_headers(self) -> Dict[str, str]:
        return {"PRIVATE-TOKEN": self.settings.token}

    async def _http_get(
        self, path: str, params: Optional[Dict[str, str]] = None
    ) -> Tuple[Any, PageInfo]:
        """Authenticated GET. Returns (parsed JSON, PageInfo)."""
        session = await self._get_session()
        url = self.settings.base_url.rstrip("/") + path
        with tracer.start_as_current_span(
            "gitlab.http_get",
            attributes={"http.url": url, "gitlab.page": (params or {}).get("page", "")},
        ) as span:
            async with session.get(
                url, params=params or {}, headers=self._auth_headers()
            ) as resp:
                span.set_attribute("http.status_code", resp.status)
                resp.raise_for_status()
                body = await resp.json()
                page = PageInfo.from_headers(resp.headers)

        logger.debug("GET %s params=%s next_page=%d", path, params, page.next_page)
        return body, page


def _path_id(value: int | str) -> str:
    """Project ids may also be 'group/project' paths, which must be URL-encoded."""
    return quote(str(value), safe="")


def connect(settings: GitLabSettings) -> GitLabClient:
    """Build an authenticated client. Makes no network call."""
    return GitLabClient(settings)
