from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Response
from fastapi.responses import HTMLResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from accesslog_metrics.metrics import LogMetrics
from accesslog_metrics.tailer import TailSupervisor

INDEX_HTML = """<html>
<head><title>accesslog-metrics</title></head>
<body><p>Metrics are at <a href="/metrics">/metrics</a>.</p></body>
</html>
"""


def create_app(metrics: LogMetrics, supervisor: Optional[TailSupervisor] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Start the log tailer alongside the server
        if supervisor is not None:
            supervisor.start()
        yield

    app = FastAPI(title="accesslog-metrics", lifespan=lifespan)

    # ----------------------------
    # Routes
    # ----------------------------
    @app.get("/", response_class=HTMLResponse)
    def home():
        return INDEX_HTML

    @app.get("/metrics")
    def scrape():
        return Response(content=generate_latest(metrics.registry), media_type=CONTENT_TYPE_LATEST)

    return app
