# post2post/web/metrics.py
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

# -------------------------------------------------------
#  Prometheus metrics definitions
# -------------------------------------------------------

HTTP_TOTAL = Counter(
    "post2post_http_requests_total",
    "Total incoming HTTP requests",
    ["method", "path"]
)
HTTP_2XX = Counter("post2post_http_2xx_total", "HTTP 2xx responses")
HTTP_4XX = Counter("post2post_http_4xx_total", "HTTP 4xx responses")
HTTP_LATENCY = Histogram(
    "post2post_http_latency_seconds",
    "Inbound request handling latency (seconds)",
    buckets=(0.005, 0.01, 0.05, 0.1, 0.3, 0.5, 1.0, 3.0, 5.0)
)

ROUNDTRIP_TOTAL = Counter(
    "post2post_roundtrip_total",
    "Round trips by outcome",
    ["outcome"]  # success | timeout | transport | configuration | correlation
)
ROUNDTRIP_LATENCY = Histogram(
    "post2post_roundtrip_latency_seconds",
    "Time from send to resolution of a round trip (seconds)",
    buckets=(0.01, 0.05, 0.1, 0.3, 0.5, 1.0, 3.0, 5.0, 10.0, 30.0, 60.0)
)
ROUNDTRIP_IN_FLIGHT = Gauge(
    "post2post_roundtrip_in_flight",
    "Round trips currently waiting for a callback"
)
CALLBACK_TOTAL = Counter(
    "post2post_callback_total",
    "Callback deliveries by registry outcome",
    ["outcome"]  # delivered | not_found | gone
)
WEBHOOK_DELIVERY_TOTAL = Counter(
    "post2post_webhook_delivery_total",
    "Processed webhook results posted back to callers",
    ["outcome"]  # ok | http_error | transport_error | invalid_url | skipped
)

# -------------------------------------------------------
#  FastAPI router for metrics endpoints
# -------------------------------------------------------

router = APIRouter()

@router.get("/metrics")
async def metrics_endpoint():
    """Prometheus scrape endpoint."""
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
