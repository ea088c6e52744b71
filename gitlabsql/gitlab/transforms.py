from __future__ import annotations
from datetime import date, datetime, timezone
from typing import Any, List, Optional

ACCESS_LEVELS = {
    0: "No Permissions",
    5: "Minimal Access",
    10: "Guest",
    20: "Reporter",
    30: "Developer",
    40: "Maintainer",
    50: "Owner",
}


def iso_date_to_timestamp(value: Any) -> Optional[datetime]:
    """GitLab date-only value ('2024-05-01') → midnight UTC of that day."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        day = value
    else:
        day = date.fromisoformat(str(value)[:10])
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


def parse_assignees(value: Any) -> Optional[List[str]]:
    """Assignee objects → usernames, upstream order kept. None stays None."""
    if value is None:
        return None
    return [assignee.get("username") for assignee in value]


def parse_access_level(level: Any) -> Optional[str]:
    """Numeric access level → label. Unknown codes are 'No Permissions'; None stays None."""
    if level is None:
        return None
    return ACCESS_LEVELS.get(level, ACCESS_LEVELS[0])
