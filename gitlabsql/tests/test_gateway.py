"""Tests for the HTTP gateway: connection resolution at startup and /v1/query status mapping."""
import pytest
from fastapi.testclient import TestClient

from conftest import FakeClientFactory, FakeGitLabClient, make_issue, make_project
from gitlabsql.engine.query_engine import QueryEngine
from gitlabsql.gateway import main
from gitlabsql.gitlab.plugin import build_plugin


@pytest.fixture
def connection_dir(tmp_path, monkeypatch):
    monkeypatch.delenv("GITLAB_ADDR", raising=False)
    monkeypatch.delenv("GITLAB_TOKEN", raising=False)
    monkeypatch.setenv("GITLAB_CONNECTION_DIR", str(tmp_path))
    return tmp_path


class TestStartup:
    def test_connections_from_files(self, connection_dir, monkeypatch):
        (connection_dir / "gitlab.yaml").write_text(
            "base_url: https://gitlab.example.com\ntoken: glpat-a\n"
        )
        (connection_dir / "cloud.yml").write_text("baseurl: https://gitlab.com/\ntoken: glpat-b\n")

        with TestClient(main.app) as client:
            resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "checks": {"cloud": "ok", "gitlab": "ok"}}
        assert main._registry.settings_for("gitlab").base_url == "https://gitlab.example.com/api/v4"
        assert main._registry.settings_for("cloud").is_gitlab_cloud

    def test_environment_only(self, connection_dir, monkeypatch):
        monkeypatch.setenv("GITLAB_ADDR", "https://git.internal")
        monkeypatch.setenv("GITLAB_TOKEN", "glpat-env")

        with TestClient(main.app) as client:
            resp = client.get("/health")

        assert resp.status_code == 200
        assert main._registry.settings_for("gitlab").token == "glpat-env"

    def test_missing_token_degrades_health(self, connection_dir):
        (connection_dir / "gitlab.yaml").write_text("base_url: https://gitlab.example.com\n")

        with TestClient(main.app) as client:
            resp = client.get("/health")

        assert resp.status_code == 503
        assert "GITLAB_TOKEN" in resp.json()["checks"]["gitlab"]



class TestQueryEndpoint:
    @pytest.fixture
    def gateway(self, connection_dir, monkeypatch):
        """Started app; gateway.use(fake) swaps in an engine over an in-memory client."""
        (connection_dir / "gitlab.yaml").write_text(
            "base_url: https://gitlab.example.com\ntoken: glpat-a\n"
        )
        (connection_dir / "broken.yaml").write_text("token: glpat-b\n")

        with TestClient(main.app) as client:
            def use(fake):
                monkeypatch.setattr(
                    main, "_engine",
                    QueryEngine(build_plugin(), client_factory=FakeClientFactory(fake)),
                )
            client.use = use
            client.use(FakeGitLabClient())
            yield client

    def test_query_returns_rows(self, gateway):
        gateway.use(FakeGitLabClient(pages={"projects/3/issues": [[make_issue(1), make_issue(2)]]}))
        resp = gateway.post("/v1/query", json={
            "sql": "SELECT iid, title, created_at FROM gitlab_issue WHERE project_id = 3 ORDER BY iid",
            "metadata": {"trace_id": "t-1"},
        })

        assert resp.status_code == 200
        body = resp.json()
        assert body["trace_id"] == "t-1"
        assert [r["iid"] for r in body["rows"]] == [1, 2]
        assert body["rows"][0]["created_at"].startswith("2024-03-01T08:00:00")
        assert body["scans"]["gitlab_issue"]["mode"] == "list"

    def test_unknown_connection_is_404(self, gateway):
        resp = gateway.post("/v1/query", json={"sql": "SELECT 1", "connection": "nope"})
        assert resp.status_code == 404

    def test_unusable_connection_is_400(self, gateway):
        resp = gateway.post(
            "/v1/query", json={"sql": "SELECT * FROM gitlab_project", "connection": "broken"}
        )
        assert resp.status_code == 400
        assert "GITLAB_ADDR" in resp.json()["detail"]

    def test_upstream_error_is_502(self, gateway):
        resp = gateway.post("/v1/query", json={"sql": "SELECT * FROM gitlab_project WHERE id = 9"})
        assert resp.status_code == 502
        assert resp.json()["upstream_status"] == 404

    def test_bad_sql_is_400(self, gateway):
        gateway.use(FakeGitLabClient(pages={"projects": [[make_project(1)]]}))
        resp = gateway.post("/v1/query", json={"sql": "SELECT * FROM gitlab_user"})
        assert resp.status_code == 400
        assert "trace_id" in resp.json()

    def test_metrics_count_queries(self, gateway):
        gateway.post("/v1/query", json={"sql": "SELECT 1", "connection": "nope"})
        resp = gateway.get("/metrics")
        assert resp.status_code == 200
        assert 'gitlabsql_queries_total{status="404",connection="nope"}' in resp.text

    def test_reload_rereads_connection_files(self, gateway, connection_dir):
        (connection_dir / "broken.yaml").write_text("base_url: https://fixed.example.com\ntoken: glpat-b\n")
        resp = gateway.post("/v1/connections/reload")

        assert resp.status_code == 200
        assert resp.json() == {"connections": {"gitlab": "ok", "broken": "ok"}}
        assert gateway.get("/health").status_code == 200

    def test_reload_with_invalid_file_is_400(self, gateway, connection_dir):
        (connection_dir / "extra.yaml").write_text("token: [unclosed\n")
        resp = gateway.post("/v1/connections/reload")

        assert resp.status_code == 400
        assert "extra.yaml" in resp.json()["detail"]
        assert main._registry.settings_for("gitlab").token == "glpat-a"
