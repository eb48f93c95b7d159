"""
Metrics Endpoint for Prometheus Scraping

Exposes Prometheus metrics at /metrics endpoint
"""

from fastapi import APIRouter, Response
from app.observability.metrics import get_metrics

router = APIRouter(tags=["observability"])


@router.get("/metrics")
async def prometheus_metrics():
    """
    Prometheus metrics endpoint

    Example Prometheus scrape config:
    ```yaml
    scrape_configs:
      - job_name: 'scheduling-engine'
        metrics_path: '/metrics'
        scrape_interval: 15s
    ```
    """
    data, content_type = get_metrics()
    return Response(content=data, media_type=content_type)
