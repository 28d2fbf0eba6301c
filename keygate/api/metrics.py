"""Prometheus Metrics Endpoint."""

from fastapi import APIRouter, Request, Response

router = APIRouter()


@router.get("/metrics")
async def get_metrics(request: Request):
    """Prometheus metrics endpoint."""
    metrics = request.app.state.metrics
    return Response(content=metrics.get_metrics(), media_type=metrics.get_content_type())
