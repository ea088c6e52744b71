from __future__ import annotations
import logging
from typing import Any, List, Optional, Sequence, Tuple

from opentelemetry import trace

from gitlabsql.client.gitlab import ListIssuesOptions
from gitlabsql.errors import UnsupportedQueryError
from gitlabsql.gitlab.transforms import iso_date_to_timestamp, parse_assignees
from gitlabsql.plugin.pagination import paginate
from gitlabsql.plugin.quals import QualApplier, apply_optional_quals, set_option
from gitlabsql.plugin.table import (
    Column,
    ColumnType as T,
    ListConfig,
    QueryData,
    Table,
    from_field,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("gitlabsql.gitlab")

OPTIONAL_KEY_COLUMNS = [
    "assignee", "assignee_id", "author", "author_id",
    "confidential", "search_string", "project_id",
]

# At least one of these must be qualified when listing issues on gitlab.com,
# otherwise the instance-wide search is rejected upstream as too expensive.
CLOUD_REQUIRED_QUALS = ("assignee", "assignee_id", "author_id", "project_id")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "t", "1", "yes")
    return bool(value)


# author (username) is accepted as a key column but not sent upstream;
# the host filters it after the fetch.
ISSUE_QUAL_APPLIERS: Sequence[Tuple[str, QualApplier]] = (
    ("assignee", set_option("assignee_username", str)),
    ("assignee_id", set_option("assignee_id", int)),
    ("author_id", set_option("author_id", int)),
    ("confidential", set_option("confidential", _as_bool)),
    ("search_string", set_option("search", str)),
)


def search_string_from_quals(d: QueryData, _item: Any) -> Optional[str]:
    return d.quals.get("search_string")


def issue_columns() -> List[Column]:
    return [
        Column("id", T.INT, "The ID of the Issue."),
        Column("iid", T.INT, "The project-scoped ID of the Issue."),
        Column("title", T.STRING, "The title of the Issue."),
        Column("description", T.STRING, "The description of the Issue."),
        Column("state", T.STRING, "The state of the Issue (opened, closed, etc)."),
        Column("project_id", T.INT, "The ID of the project - link to `gitlab_project.id`."),
        Column("external_id", T.STRING, "The external ID of the issue."),
        Column("author_id", T.INT, "The ID of the author.", transform=from_field("author.id")),
        Column("author", T.STRING, "The username of the author.", transform=from_field("author.username")),
        Column("created_at", T.TIMESTAMP, "Timestamp of issue creation."),
        Column("updated_at", T.TIMESTAMP, "Timestamp of last update to the issue."),
        Column("closed_at", T.TIMESTAMP, "Timestamp of when issue was closed (null if not closed)."),
        Column("closed_by_id", T.INT, "The ID of the user whom closed the issue.",
               transform=from_field("closed_by.id")),
        Column("closed_by", T.STRING, "The username of the user whom closed the issue.",
               transform=from_field("closed_by.username")),
        Column("assignee_id", T.INT, "The ID of the user assigned to the issue.",
               transform=from_field("assignee.id")),
        Column("assignee", T.STRING, "The username of the user assigned to the issue.",
               transform=from_field("assignee.username")),
        Column("assignees", T.JSON, "An array of assigned usernames, for when more than one user is assigned.",
               transform=from_field("assignees").transform(parse_assignees)),
        Column("labels", T.JSON, "An array of label names on the issue."),
        Column("upvotes", T.INT, "Count of up-votes received on the issue."),
        Column("downvotes", T.INT, "Count of down-votes received on the issue."),
        Column("due_date", T.TIMESTAMP, "Timestamp of due date for the issue to be completed by.",
               transform=from_field("due_date").null_if_zero().transform(iso_date_to_timestamp)),
        Column("web_url", T.STRING, "The url to access the issue."),
        Column("confidential", T.BOOL, "Indicates if the issue is marked as confidential."),
        Column("discussion_locked", T.BOOL,
               "Indicates if the issue has the discussions locked against new input."),
        Column("search_string", T.STRING, "Search string to limit results.",
               hydrate=search_string_from_quals),
    ]


def table_issue() -> Table:
    return Table(
        name="gitlab_issue",
        description="All GitLab Issues.",
        columns=issue_columns(),
        list_config=ListConfig(hydrate=list_issues, optional_key_columns=OPTIONAL_KEY_COLUMNS),
    )


# ---------------------------------------------------------------------------
# List hydrates
# ---------------------------------------------------------------------------

async def list_issues(d: QueryData) -> None:
    q = d.quals

    if d.settings.is_gitlab_cloud and all(q.get(k) is None for k in CLOUD_REQUIRED_QUALS):
        raise UnsupportedQueryError(
            "When using this table with gitlab cloud, 'List' call requires an '=' qual for "
            "one or more of the following columns: " + ", ".join(CLOUD_REQUIRED_QUALS)
        )

    if q.get("project_id") is not None:
        await list_project_issues(d)
    else:
        await list_all_issues(d)


def issue_options(d: QueryData) -> ListIssuesOptions:
    opts = ListIssuesOptions(scope="all", page=1, per_page=d.settings.page_size)
    return apply_optional_quals(opts, d.quals, ISSUE_QUAL_APPLIERS)


async def list_all_issues(d: QueryData) -> None:
    opts = issue_options(d)

    with tracer.start_as_current_span("gitlab_issue.list_all") as span:
        async with d.connect() as client:

            async def fetch_page(page: int):
                opts.page = page
                issues, resp = await client.list_issues(opts)
                return issues, resp.next_page

            streamed = await paginate(fetch_page, d.stream_list_item)
        span.set_attribute("gitlab.rows_streamed", streamed)


async def list_project_issues(d: QueryData) -> None:
    """Issues of one project; honours the same qualifiers as list_all_issues."""
    project_id = int(d.quals["project_id"])
    opts = issue_options(d)

    with tracer.start_as_current_span(
        "gitlab_issue.list_project", attributes={"gitlab.project_id": project_id}
    ) as span:
        async with d.connect() as client:

            async def fetch_page(page: int):
                opts.page = page
                issues, resp = await client.list_project_issues(project_id, opts)
                return issues, resp.next_page

            streamed = await paginate(fetch_page, d.stream_list_item)
        span.set_attribute("gitlab.rows_streamed", streamed)
