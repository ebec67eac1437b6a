from fastapi import APIRouter, Response

from cardsync.game.metrics import render_latest

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus exposition of the reconciliation counters and gauges."""
    payload, content_type = render_latest()
    return Response(content=payload, media_type=content_type)
