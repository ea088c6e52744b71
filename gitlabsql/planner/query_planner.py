from __future__ import annotations
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

import sqlglot
import sqlglot.expressions as exp

from gitlabsql.planner.models import QueryPlan, ScanNode
from gitlabsql.plugin.table import ColumnType, Plugin, Table

logger = logging.getLogger(__name__)

_NOT_PUSHABLE = object()


@dataclass
class _TableRef:
    """One occurrence of a plugin table in the query."""

    table_name: str
    alias: Optional[str]
    node: exp.Table

    @property
    def qualifier(self) -> str:
        """Lower-cased name column qualifiers use for this reference."""
        return self.alias or self.table_name


class QueryPlanner:
    """
    Translates a SQL string into a QueryPlan using sqlglot AST parsing.

    - Tables are recognised by bare name (gitlab_issue) or qualified with the
      plugin name (gitlab.gitlab_issue); the qualified form is rewritten to
      the bare DuckDB view name.
    - Each reference to a table is its own scan. A table joined to itself gets
      one view per reference (gitlab_project_0, gitlab_project_1), so a
      qualifier on one alias never narrows the other.
    - Equality predicates `col = literal` are collected from the top-level AND
      conjuncts of the outer WHERE clause only. Anything under OR / NOT or
      inside a subquery is left for DuckDB.
    - Literals are coerced to the column's type, so `id = '42'` hands the
      hydrate the integer 42.
    """

    def __init__(self, plugin: Plugin) -> None:
        self._plugin = plugin

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def plan(self, sql: str) -> QueryPlan:
        """
        Raises:
            ValueError: SQL does not parse, or references no plugin table.
        """
        try:
            ast = sqlglot.parse_one(sql, read="duckdb")
        except Exception as exc:
            raise ValueError(f"SQL parse error: {exc}") from exc

        refs = self._extract_table_refs(ast)
        if not refs:
            raise ValueError(
                "No recognized tables in query. "
                f"Available: {', '.join(sorted(self._plugin.tables))}"
            )

        conjuncts = self._where_conjuncts(ast)
        plan = QueryPlan()
        ref_counts = Counter(ref.table_name for ref in refs)
        qualifier_counts = Counter(ref.qualifier for ref in refs)

        for i, ref in enumerate(refs):
            table = self._plugin.table(ref.table_name)
            shared = ref_counts[ref.table_name] > 1
            # a qualifier shared by two references identifies neither
            names = {ref.qualifier} if qualifier_counts[ref.qualifier] == 1 else set()
            quals, residual = self._classify_predicates(
                conjuncts, table, names, allow_unqualified=not shared
            )
            view_name = f"{ref.table_name}_{i}" if shared else ref.table_name
            self._point_at_view(ref, view_name, shared)
            node = ScanNode(
                id=f"scan_{ref.table_name}_{i}",
                table_name=ref.table_name,
                view_name=view_name,
                quals=quals,
                residual_filters=residual,
            )
            logger.debug("Planned %s quals=%s residual=%s", node.id, quals, residual)
            plan.add_node(node)

        plan.rewritten_sql = ast.sql(dialect="duckdb")
        return plan

    # ------------------------------------------------------------------
    # AST helpers
    # ------------------------------------------------------------------

    def _table_name(self, table_node: exp.Table) -> Optional[str]:
        db = table_node.args.get("db")
        name = table_node.name
        if not name:
            return None
        if db is not None and db.name != self._plugin.name:
            return None
        return name if name in self._plugin.tables else None

    def _extract_table_refs(self, ast: exp.Expression) -> List[_TableRef]:
        """
        Every reference to a plugin table, in query order. A table joined to
        itself yields one reference per occurrence.
        """
        refs: List[_TableRef] = []
        for table_node in ast.find_all(exp.Table):
            full_name = self._table_name(table_node)
            if full_name is None:
                continue
            alias = table_node.alias.lower() if table_node.alias else None
            refs.append(_TableRef(table_name=full_name, alias=alias, node=table_node))
        return refs

    def _point_at_view(self, ref: _TableRef, view_name: str, shared: bool) -> None:
        """
        Rewrite one reference to its DuckDB view: gitlab.gitlab_issue →
        gitlab_issue. A table referenced more than once gets one view per
        reference, aliased so column qualifiers in the query still resolve.
        """
        ref.node.set("db", None)
        if not shared:
            return
        ref.node.set("this", exp.to_identifier(view_name))
        if ref.alias is None:
            ref.node.set("alias", exp.TableAlias(this=exp.to_identifier(ref.table_name)))

    def _where_conjuncts(self, ast: exp.Expression) -> List[exp.Expression]:
        where = ast.args.get("where") if isinstance(ast, exp.Select) else None
        if where is None:
            return []
        condition = where.this.unnest()
        if isinstance(condition, exp.And):
            return [c.unnest() for c in condition.flatten()]
        return [condition]

    def _classify_predicates(
        self,
        conjuncts: List[exp.Expression],
        table: Table,
        names: Set[str],
        allow_unqualified: bool = True,
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Split the equality predicates that belong to one table reference into
        hydrate quals (key columns) and residual filters (everything else).

        A qualified column belongs to the reference when its qualifier is one
        of names. An unqualified column is only attributed when
        allow_unqualified is set.
        """
        quals: Dict[str, Any] = {}
        residual: Dict[str, Any] = {}
        key_columns = set(table.key_columns)

        for cond in conjuncts:
            if not isinstance(cond, exp.EQ):
                continue

            column_node, literal_node = cond.left, cond.right
            if not isinstance(column_node, exp.Column):
                column_node, literal_node = literal_node, column_node
            if not isinstance(column_node, exp.Column):
                continue

            col_name = column_node.name.lower()
            qualifier = column_node.table.lower() if column_node.table else None
            if qualifier is None and not allow_unqualified:
                continue
            if qualifier is not None and qualifier not in names:
                continue

            column = table.column(col_name)
            if column is None:
                continue

            value = _literal_value(literal_node, column.type)
            if value is _NOT_PUSHABLE:
                continue

            if col_name in key_columns:
                quals[col_name] = value
            else:
                residual[col_name] = value

        return quals, residual


def _literal_value(node: exp.Expression, column_type: ColumnType) -> Any:
    """Python value of a literal, coerced to column_type, or _NOT_PUSHABLE."""
    if isinstance(node, exp.Boolean):
        raw: Any = node.this
    elif isinstance(node, exp.Literal):
        raw = node.this
    elif isinstance(node, exp.Neg) and isinstance(node.this, exp.Literal) and not node.this.is_string:
        raw = f"-{node.this.this}"
    else:
        return _NOT_PUSHABLE

    try:
        if column_type is ColumnType.INT:
            return int(raw)
        if column_type is ColumnType.BOOL:
            if isinstance(raw, bool):
                return raw
            lowered = str(raw).lower()
            if lowered in ("true", "t", "1"):
                return True
            if lowered in ("false", "f", "0"):
                return False
            return _NOT_PUSHABLE
        if column_type is ColumnType.STRING:
            return str(raw)
    except (TypeError, ValueError):
        return _NOT_PUSHABLE
    # TIMESTAMP / JSON predicates stay in DuckDB
    return _NOT_PUSHABLE
