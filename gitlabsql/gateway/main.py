from __future__ import annotations
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from pydantic import BaseModel

from gitlabsql.config.registry import ConnectionRegistry
from gitlabsql.engine.query_engine import QueryEngine
from gitlabsql.errors import ConfigurationError
from gitlabsql.gitlab.plugin import PLUGIN_NAME, build_plugin

logger = logging.getLogger(__name__)
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)

# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------
QUERY_COUNT = Counter(
    "gitlabsql_queries_total",
    "Total SQL queries processed",
    ["status", "connection"],
)
QUERY_LATENCY = Histogram(
    "gitlabsql_query_latency_seconds",
    "Query execution latency",
    ["connection"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# ---------------------------------------------------------------------------
# Process-level state (populated in lifespan)
# ---------------------------------------------------------------------------
_registry: Optional[ConnectionRegistry] = None
_engine: Optional[QueryEngine] = None


def _init_tracing() -> None:
    """
    Initialize OpenTelemetry tracing.

    - OTEL_EXPORTER_OTLP_ENDPOINT set → OTLP HTTP exporter
    - OTEL_TRACES_EXPORTER=console → ConsoleSpanExporter on stdout
    - Otherwise → spans are created but not exported
    """
    from opentelemetry import trace
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        BatchSpanProcessor,
        ConsoleSpanExporter,
        SimpleSpanProcessor,
    )

    resource = Resource.create({
        "service.name": "gitlabsql-gateway",
        "service.version": "0.1.0",
    })
    provider = TracerProvider(resource=resource)

    otlp_endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", "")
    console = os.environ.get("OTEL_TRACES_EXPORTER", "").lower() == "console"
    if otlp_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
                OTLPSpanExporter,
            )
        except ImportError:
            logger.warning(
                "opentelemetry-exporter-otlp-proto-http not installed; "
                "falling back to console"
            )
            console = True
        else:
            provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint))
            )
            logger.info("OpenTelemetry: OTLP exporter → %s", otlp_endpoint)
    if console:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)


# ---------------------------------------------------------------------------
# App lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    global _registry, _engine

    _init_tracing()

    config_dir = os.environ.get("GITLAB_CONNECTION_DIR", "configs/connections")
    _registry = ConnectionRegistry(config_dir=config_dir)
    _registry.load()
    _engine = QueryEngine(build_plugin())

    logger.info("gitlabsql gateway started. Connections: %s", sorted(_registry.health()))
    yield
    logger.info("gitlabsql gateway shut down.")


app = FastAPI(title="gitlabsql gateway", version="0.1.0", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class QueryRequest(BaseModel):
    sql: str
    connection: str = PLUGIN_NAME
    metadata: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.post("/v1/query")
async def execute_query(request: QueryRequest):
    """
    Run SQL over the gitlab tables of one connection.

    Returns 404 for an unknown connection, 400 for unusable configuration,
    bad SQL or unsupported qualifiers, 502 when GitLab returns an error.
    """
    trace_id = (request.metadata or {}).get("trace_id", str(uuid.uuid4()))
    name = request.connection

    if _registry is None or _engine is None:
        raise HTTPException(status_code=503, detail="Gateway not started")
    try:
        settings = _registry.settings_for(name)
    except ConfigurationError as exc:
        QUERY_COUNT.labels(status="400", connection=name).inc()
        raise HTTPException(status_code=400, detail=str(exc))
    except KeyError:
        QUERY_COUNT.labels(status="404", connection=name).inc()
        raise HTTPException(status_code=404, detail=f"Unknown connection: '{name}'")

    start_time = time.time()
    result = await _engine.execute_query(request.sql, settings)
    duration = time.time() - start_time

    if "error" in result:
        status_code = result.get("status_code", 500)
        QUERY_COUNT.labels(status=str(status_code), connection=name).inc()
        content = {"error": result["error"], "trace_id": trace_id}
        if "upstream_status" in result:
            content["upstream_status"] = result["upstream_status"]
        return JSONResponse(status_code=status_code, content=content)

    QUERY_LATENCY.labels(connection=name).observe(duration)
    QUERY_COUNT.labels(status="200", connection=name).inc()

    result["trace_id"] = trace_id
    return JSONResponse(content=jsonable_encoder(result))


@app.post("/v1/connections/reload")
async def reload_connections():
    """
    Re-read connection files and re-resolve every connection, e.g. after a
    token rotation. An invalid file leaves the current connections in place.
    """
    if _registry is None:
        raise HTTPException(status_code=503, detail="Gateway not started")
    try:
        _registry.load()
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"connections": _registry.health()}


@app.get("/health")
async def health():
    checks = _registry.health() if _registry else {}
    all_ok = _registry is not None and _registry.healthy
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"status": "ok" if all_ok else "degraded", "checks": checks},
    )


@app.get("/metrics")
async def metrics():
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
