from __future__ import annotations

from gitlabsql.gitlab.table_issue import table_issue
from gitlabsql.gitlab.table_project import table_project
from gitlabsql.plugin.table import Plugin

PLUGIN_NAME = "gitlab"


def build_plugin() -> Plugin:
    """The gitlab plugin with every table it serves, keyed by table name."""
    tables = [table_project(), table_issue()]
    return Plugin(name=PLUGIN_NAME, tables={t.name: t for t in tables})
