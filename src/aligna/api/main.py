from __future__ import annotations

from datetime import UTC, datetime
from dotenv import load_dotenv
import logging
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.diagnostics import router as diagnostics_router
from .routers.summary import router as summary_router
from .routers.webhooks import router as webhooks_router
from ..observability.metrics import metrics_middleware_factory

load_dotenv()  # Load environment variables from .env if present (GEMINI_API_KEY, SUPABASE_URL, etc.)

app = FastAPI(title="Aligna Summary API", version="0.1.0")

logging.basicConfig(level=logging.INFO)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(summary_router)
app.include_router(webhooks_router)
app.include_router(diagnostics_router)

# Same routers under /api
app.include_router(summary_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")
app.include_router(diagnostics_router, prefix="/api")


@app.get("/")
def root():
    return {"name": "Aligna Summary API", "version": "0.1.0"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
    }


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
