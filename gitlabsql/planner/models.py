from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class ScanNode:
    """
    One plugin table scan required by a query.

    quals are the equality qualifiers on the table's key columns; they are
    handed to the hydrate function. residual_filters are the remaining
    equality predicates on this table, which only DuckDB evaluates.
    """

    id: str                                         # "scan_gitlab_issue_0"
    table_name: str                                 # "gitlab_issue"
    view_name: str                                  # DuckDB view the rows are registered as
    quals: Dict[str, Any] = field(default_factory=dict)
    residual_filters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryPlan:
    """Scans to run (all independent, executed concurrently) and the SQL to run over them."""

    nodes: List[ScanNode] = field(default_factory=list)
    rewritten_sql: str = ""

    def add_node(self, node: ScanNode) -> None:
        self.nodes.append(node)

    def node_for(self, table_name: str) -> ScanNode:
        for node in self.nodes:
            if node.table_name == table_name:
                return node
        raise KeyError(table_name)
