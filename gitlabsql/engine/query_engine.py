from __future__ import annotations
import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Tuple

import aiohttp
import duckdb
import numpy as np
import pandas as pd
from opentelemetry import trace

from gitlabsql.client.gitlab import GitLabClient, connect
from gitlabsql.config.models import GitLabSettings
from gitlabsql.errors import GitLabSQLError, UnsupportedQueryError
from gitlabsql.planner.models import QueryPlan, ScanNode
from gitlabsql.planner.query_planner import QueryPlanner
from gitlabsql.plugin.table import ColumnType, Plugin, QueryData, Table

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("gitlabsql.engine")

_DTYPES = {
    ColumnType.INT: "Int64",
    ColumnType.BOOL: "boolean",
    ColumnType.STRING: "object",
    ColumnType.JSON: "object",
}


class QueryEngine:
    """
    Runs SQL over plugin tables.

    Flow per request:
      plan → run every table scan concurrently (get or list hydrate) →
      project streamed items into rows → register DuckDB views →
      execute SQL → return rows + metadata

    Each scan gets its own QueryData and therefore its own client; nothing
    is shared between scans. DuckDB re-applies every WHERE predicate, so
    qualifiers the upstream cannot take (e.g. author) are still honoured.
    """

    def __init__(
        self,
        plugin: Plugin,
        client_factory: Callable[[GitLabSettings], GitLabClient] = connect,
    ) -> None:
        self._plugin = plugin
        self._planner = QueryPlanner(plugin)
        self._client_factory = client_factory

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def execute_query(self, sql: str, settings: GitLabSettings) -> Dict[str, Any]:
        """
        Returns {rows, columns, scans, timing}, or {error, status_code} for:
          400: SQL cannot be planned/executed, or a GitLabSQLError
          502: GitLab returned an error or could not be reached
        """
        with tracer.start_as_current_span(
            "engine.execute_query",
            attributes={"sql": sql, "gitlab.connection": settings.connection_name},
        ) as root_span:
            # 1. Plan
            plan_start = time.time()
            try:
                plan = self._planner.plan(sql)
            except ValueError as exc:
                return {"error": str(exc), "status_code": 400}
            planning_ms = int((time.time() - plan_start) * 1000)

            # 2. Scans
            fetch_start = time.time()
            try:
                scan_results = await self._execute_plan(plan, settings)
            except GitLabSQLError as exc:
                return {"error": str(exc), "status_code": 400}
            except aiohttp.ClientResponseError as exc:
                logger.warning("GitLab returned %s: %s", exc.status, exc.message)
                return {
                    "error": f"GitLab API error {exc.status}: {exc.message}",
                    "status_code": 502,
                    "upstream_status": exc.status,
                }
            except aiohttp.ClientError as exc:
                logger.warning("GitLab request failed: %s", exc)
                return {"error": f"GitLab request failed: {exc}", "status_code": 502}
            fetch_ms = int((time.time() - fetch_start) * 1000)

            # 3. DuckDB (per-request connection)
            duckdb_start = time.time()
            con = duckdb.connect(database=":memory:")
            try:
                with tracer.start_as_current_span("engine.duckdb"):
                    for node in plan.nodes:
                        table = self._plugin.table(node.table_name)
                        rows = scan_results[node.view_name]["rows"]
                        con.register(node.view_name, rows_to_frame(table, rows))
                        logger.debug("Registered view: %s (%d rows)", node.view_name, len(rows))
                    try:
                        result_df = con.execute(plan.rewritten_sql).df()
                    except duckdb.Error as exc:
                        return {"error": f"SQL execution error: {exc}", "status_code": 400}
            finally:
                con.close()
            duckdb_ms = int((time.time() - duckdb_start) * 1000)

            total_ms = planning_ms + fetch_ms + duckdb_ms
            root_span.set_attribute("engine.total_ms", total_ms)
            root_span.set_attribute("engine.rows_returned", len(result_df))

            return {
                "rows": frame_to_records(result_df),
                "columns": result_df.columns.tolist(),
                "scans": {
                    view: {k: v for k, v in result.items() if k != "rows"}
                    for view, result in scan_results.items()
                },
                "timing": {
                    "total_ms": total_ms,
                    "planning_ms": planning_ms,
                    "fetch_ms": fetch_ms,
                    "duckdb_ms": duckdb_ms,
                },
            }

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    async def _execute_plan(
        self, plan: QueryPlan, settings: GitLabSettings
    ) -> Dict[str, Dict[str, Any]]:
        logger.info(
            "Executing %d scan(s) on connection=%s", len(plan.nodes), settings.connection_name
        )
        # The first failing scan cancels its siblings before the query returns.
        try:
            async with asyncio.TaskGroup() as tg:
                tasks = [
                    tg.create_task(self._execute_node(node, settings))
                    for node in plan.nodes
                ]
        except ExceptionGroup as group:
            raise group.exceptions[0]
        return dict(task.result() for task in tasks)

    async def _execute_node(
        self, node: ScanNode, settings: GitLabSettings
    ) -> Tuple[str, Dict[str, Any]]:
        table = self._plugin.table(node.table_name)
        rows: List[Dict[str, Any]] = []
        d = QueryData(table=table, settings=settings, client_factory=self._client_factory)
        d.sink = lambda item: rows.append(table.project_row(item, d))

        node_start = time.time()
        with tracer.start_as_current_span(
            f"engine.scan.{table.name}",
            attributes={"scan.quals": str(node.quals)},
        ) as span:
            get_cfg = table.get_config
            if get_cfg and all(k in node.quals for k in get_cfg.key_columns):
                mode = "get"
                d.quals = {k: node.quals[k] for k in get_cfg.key_columns}
                item = await get_cfg.hydrate(d)
                if item is not None:
                    rows.append(table.project_row(item, d))
            elif table.list_config:
                mode = "list"
                allowed = set(table.list_config.optional_key_columns)
                d.quals = {k: v for k, v in node.quals.items() if k in allowed}
                await table.list_config.hydrate(d)
            else:
                raise UnsupportedQueryError(
                    f"Table '{table.name}' requires an '=' qual on: "
                    + ", ".join(get_cfg.key_columns if get_cfg else [])
                )

            scan_ms = int((time.time() - node_start) * 1000)
            span.set_attribute("scan.mode", mode)
            span.set_attribute("scan.rows", len(rows))

        return node.view_name, {
            "rows": rows,
            "mode": mode,
            "quals": d.quals,
            "row_count": len(rows),
            "fetch_ms": scan_ms,
        }


# ---------------------------------------------------------------------------
# Frame conversion
# ---------------------------------------------------------------------------

def rows_to_frame(table: Table, rows: List[Dict[str, Any]]) -> pd.DataFrame:
    """
    Typed DataFrame for a table's rows. The schema comes from the table
    definition, so an empty scan still registers every column. JSON values
    become JSON text; timestamps become naive UTC.
    """
    df = pd.DataFrame(rows, columns=table.column_names)
    for col in table.columns:
        if col.type is ColumnType.TIMESTAMP:
            df[col.name] = pd.to_datetime(df[col.name], utc=True).dt.tz_localize(None)
            continue
        if col.type is ColumnType.JSON:
            df[col.name] = df[col.name].map(
                lambda v: None if v is None else json.dumps(v), na_action="ignore"
            )
        df[col.name] = df[col.name].astype(_DTYPES[col.type])
    return df


def frame_to_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """DataFrame → records of plain Python values, NaN/NA/NaT as None."""
    records = df.astype(object).where(df.notna(), None).to_dict(orient="records")
    return [
        {k: (v.item() if isinstance(v, np.generic) else v) for k, v in record.items()}
        for record in records
    ]
