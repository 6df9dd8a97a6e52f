from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from apps.api.dependencies.auth import AdminUser
from apps.api.metrics import metrics_registry
from apps.api.metrics.exporters import PrometheusExporter

router = APIRouter(prefix="/metrics", tags=["observability"])


@router.get("", response_class=PlainTextResponse, summary="Prometheus metrics")
async def read_metrics(request: Request, _: AdminUser) -> PlainTextResponse:
    registry = getattr(request.app.state, "metrics_registry", metrics_registry)
    exporter = PrometheusExporter(registry)
    return PlainTextResponse(exporter.build_payload(), media_type=exporter.content_type)
