from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from gitlabsql.client.gitlab import GitLabClient, connect
from gitlabsql.config.models import GitLabSettings


class ColumnType(str, Enum):
    INT = "INT"
    STRING = "STRING"
    BOOL = "BOOL"
    TIMESTAMP = "TIMESTAMP"
    JSON = "JSON"


# ---------------------------------------------------------------------------
# Declarative transforms
# ---------------------------------------------------------------------------

def get_path(item: Any, path: str) -> Any:
    """
    Dotted field lookup: get_path({"owner": {"id": 3}}, "owner.id") → 3.
    Any missing hop (or a null parent, e.g. a group-owned project's owner)
    yields None.
    """
    node = item
    for key in path.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(key)
        if node is None:
            return None
    return node


def _null_if_zero(value: Any) -> Any:
    return value if value else None


class Transform:
    """
    A source (a field path on the raw item, or the hydrate value itself)
    followed by an ordered chain of value functions.

        from_field("due_date").null_if_zero().transform(iso_date_to_timestamp)
    """

    def __init__(self, field_path: Optional[str] = None) -> None:
        self.field_path = field_path
        self._steps: List[Callable[[Any], Any]] = []

    def null_if_zero(self) -> "Transform":
        self._steps.append(_null_if_zero)
        return self

    def transform(self, fn: Callable[[Any], Any]) -> "Transform":
        self._steps.append(fn)
        return self

    def resolve(self, source: Any) -> Any:
        value = source if self.field_path is None else get_path(source, self.field_path)
        for step in self._steps:
            value = step(value)
        return value


def from_field(path: str) -> Transform:
    return Transform(field_path=path)


def from_value() -> Transform:
    return Transform()


def _parse_timestamp(value: Any) -> Any:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        if not value:
            return None
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return value


def coerce(column_type: ColumnType, value: Any) -> Any:
    if value is None:
        return None
    if column_type is ColumnType.TIMESTAMP:
        return _parse_timestamp(value)
    return value


# ---------------------------------------------------------------------------
# Table descriptors
# ---------------------------------------------------------------------------

HydrateFunc = Callable[["QueryData"], Awaitable[Any]]
ColumnHydrateFunc = Callable[["QueryData", Any], Any]


@dataclass
class Column:
    """
    A typed output column.

    Without an explicit transform the column reads the raw field of the same
    name. A column with a hydrate function takes its value from that function
    (called per row with the query data and the raw item) instead of the item.
    """

    name: str
    type: ColumnType
    description: str = ""
    transform: Optional[Transform] = None
    hydrate: Optional[ColumnHydrateFunc] = None

    def __post_init__(self) -> None:
        if self.transform is None:
            self.transform = from_value() if self.hydrate else from_field(self.name)

    def value(self, item: Any, d: "QueryData") -> Any:
        source = self.hydrate(d, item) if self.hydrate else item
        return coerce(self.type, self.transform.resolve(source))


@dataclass
class ListConfig:
    hydrate: HydrateFunc
    optional_key_columns: List[str] = field(default_factory=list)


@dataclass
class GetConfig:
    key_columns: List[str]
    hydrate: HydrateFunc


@dataclass
class Table:
    name: str
    description: str
    columns: List[Column]
    list_config: Optional[ListConfig] = None
    get_config: Optional[GetConfig] = None

    def column(self, name: str) -> Optional[Column]:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def key_columns(self) -> List[str]:
        """Every column whose equality qualifier can be handed to a hydrate."""
        keys: List[str] = []
        if self.list_config:
            keys.extend(self.list_config.optional_key_columns)
        if self.get_config:
            keys.extend(k for k in self.get_config.key_columns if k not in keys)
        return keys

    def project_row(self, item: Any, d: "QueryData") -> Dict[str, Any]:
        return {col.name: col.value(item, d) for col in self.columns}


# ---------------------------------------------------------------------------
# Per-call query data
# ---------------------------------------------------------------------------

@dataclass
class QueryData:
    """
    Everything one hydrate invocation needs: the table, the resolved
    connection settings, the equality qualifiers keyed by column name, and
    the sink streamed items are handed to.

    When no sink is given, streamed items are collected in `items`.
    """

    table: Table
    settings: GitLabSettings
    quals: Dict[str, Any] = field(default_factory=dict)
    sink: Optional[Callable[[Any], None]] = None
    client_factory: Callable[[GitLabSettings], GitLabClient] = connect
    items: List[Any] = field(default_factory=list)

    def stream_list_item(self, item: Any) -> None:
        if self.sink is not None:
            self.sink(item)
        else:
            self.items.append(item)

    def connect(self) -> GitLabClient:
        return self.client_factory(self.settings)


@dataclass
class Plugin:
    name: str
    tables: Dict[str, Table] = field(default_factory=dict)

    def table(self, name: str) -> Table:
        try:
            return self.tables[name]
        except KeyError:
            raise KeyError(
                f"Unknown table: '{name}'. Available: {', '.join(sorted(self.tables))}"
            ) from None
