from __future__ import annotations
import logging
from typing import Any, Dict, List

from opentelemetry import trace

from gitlabsql.client.gitlab import ListProjectsOptions
from gitlabsql.gitlab.transforms import iso_date_to_timestamp, parse_access_level
from gitlabsql.plugin.pagination import paginate
from gitlabsql.plugin.table import (
    Column,
    ColumnType as T,
    GetConfig,
    ListConfig,
    QueryData,
    Table,
    from_field,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("gitlabsql.gitlab")


def project_columns() -> List[Column]:
    return [
        Column("id", T.INT, "The ID of the project."),
        Column("name", T.STRING, "The projects name."),
        Column("path", T.STRING, "The projects path."),
        Column("description", T.STRING, "The projects description."),
        Column("default_branch", T.STRING, "The projects default branch name."),
        Column("full_name", T.STRING, "The projects name including namespace.",
               transform=from_field("name_with_namespace")),
        Column("full_path", T.STRING, "The projects path including namespace.",
               transform=from_field("path_with_namespace")),
        Column("public", T.BOOL, "Indicates if the project is public."),
        Column("visibility", T.STRING, "The projects visibility level (private/public/internal)."),
        Column("web_url", T.STRING, "The projects url."),
        Column("tag_list", T.JSON, "An array of tags associated to the project."),
        Column("issues_enabled", T.BOOL, "Indicates if project has issues enabled."),
        Column("open_issues_count", T.INT, "A count of open issues on the project."),
        Column("merge_requests_enabled", T.BOOL, "Indicates if merge requests are enabled on the project."),
        Column("approvals_before_merge", T.INT,
               "The project setting for number of approvals required before a merge request can be merged."),
        Column("jobs_enabled", T.BOOL, "Indicates if the project has jobs enabled."),
        Column("wiki_enabled", T.BOOL, "Indicates if the project has the wiki enabled."),
        Column("snippets_enabled", T.BOOL, "Indicates if the project has snippets enabled."),
        Column("container_registry_enabled", T.BOOL, "Indicates if the project has the container registry enabled."),
        Column("creator_id", T.INT, "The ID of the projects creator."),
        Column("created_at", T.TIMESTAMP, "Timestamp of when project was created."),
        Column("last_activity_at", T.TIMESTAMP, "Timestamp of when last activity happened on the project."),
        Column("marked_for_deletion_at", T.TIMESTAMP, "Timestamp of when project was marked for deletion.",
               transform=from_field("marked_for_deletion_at").null_if_zero().transform(iso_date_to_timestamp)),
        Column("empty_repo", T.BOOL, "Indicates if the repository of the project is empty."),
        Column("archived", T.BOOL, "Indicates if the project is archived."),
        Column("avatar_url", T.STRING, "The url for the projects avatar."),
        Column("forks_count", T.INT, "The number of forks of the project."),
        Column("star_count", T.INT, "The number of stars given to the project."),
        Column("lfs_enabled", T.BOOL, "Indicates if the project has large file system enabled."),
        Column("request_access_enabled", T.BOOL, "Indicates if the project has request access enabled."),
        Column("packages_enabled", T.BOOL, "Indicates if the project has packages enabled."),
        Column("owner_id", T.INT, "The projects owner ID (null if owned by a group).",
               transform=from_field("owner.id")),
        Column("owner_username", T.STRING, "The projects owner username (null if owned by a group).",
               transform=from_field("owner.username")),
        Column("namespace_id", T.INT, "The ID of the namespace (user or group) the project lives in.",
               transform=from_field("namespace.id")),
        Column("namespace_path", T.STRING, "The full path of the projects namespace.",
               transform=from_field("namespace.full_path")),
        Column("namespace_kind", T.STRING, "The kind of namespace owning the project (user/group).",
               transform=from_field("namespace.kind")),
        Column("access_level", T.STRING,
               "The authenticated users access level on the project (null if not reported).",
               transform=from_field("permissions.project_access.access_level").transform(parse_access_level)),
    ]


def table_project() -> Table:
    return Table(
        name="gitlab_project",
        description="Projects in the GitLab instance.",
        columns=project_columns(),
        list_config=ListConfig(hydrate=list_projects),
        get_config=GetConfig(key_columns=["id"], hydrate=get_project),
    )


async def list_projects(d: QueryData) -> None:
    opts = ListProjectsOptions(page=1, per_page=d.settings.page_size)

    with tracer.start_as_current_span("gitlab_project.list") as span:
        async with d.connect() as client:

            async def fetch_page(page: int):
                opts.page = page
                projects, resp = await client.list_projects(opts)
                return projects, resp.next_page

            streamed = await paginate(fetch_page, d.stream_list_item)
        span.set_attribute("gitlab.rows_streamed", streamed)


async def get_project(d: QueryData) -> Dict[str, Any]:
    project_id = int(d.quals["id"])
    with tracer.start_as_current_span(
        "gitlab_project.get", attributes={"gitlab.project_id": project_id}
    ):
        async with d.connect() as client:
            return await client.get_project(project_id)
