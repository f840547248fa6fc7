"""
Prometheus metrics for channel synchronization
Queue flow, per-channel call outcomes and FX cache behaviour
"""

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# ============= METRICS DEFINITIONS =============

# Request metrics
http_requests_total = Counter(
    'otasync_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration_seconds = Histogram(
    'otasync_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0]
)

# Queue metrics
events_enqueued_total = Counter(
    'otasync_events_enqueued_total',
    'Sync events accepted by the queue',
    ['event_type', 'outcome']
)

events_leased_total = Counter(
    'otasync_events_leased_total',
    'Sync events leased by workers',
    ['event_type']
)

events_finished_total = Counter(
    'otasync_events_finished_total',
    'Sync events leaving processing',
    ['event_type', 'status']
)

events_reaped_total = Counter(
    'otasync_events_reaped_total',
    'Terminal sync events removed by the reaper'
)

throttled_enqueues_total = Counter(
    'otasync_throttled_enqueues_total',
    'Producer enqueues pushed out by back-pressure',
    ['event_type']
)

# Channel metrics
channel_calls_total = Counter(
    'otasync_channel_calls_total',
    'Per-channel adapter outcomes',
    ['channel', 'status', 'code']
)

channel_call_duration_seconds = Histogram(
    'otasync_channel_call_duration_seconds',
    'Adapter call latency in seconds',
    ['channel'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

workers_busy = Gauge(
    'otasync_workers_busy',
    'Workers currently processing an event'
)

# FX metrics
fx_lookups_total = Counter(
    'otasync_fx_lookups_total',
    'FX cache lookups',
    ['result']
)

# ============= METRIC HELPERS =============

def track_http_request(method: str, endpoint: str, status: int, duration: float):
    """Track HTTP request metrics"""
    http_requests_total.labels(method=method, endpoint=endpoint, status=status).inc()
    http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)

def track_enqueue(event_type: str, outcome: str):
    """outcome: created | coalesced | throttled"""
    events_enqueued_total.labels(event_type=event_type, outcome=outcome).inc()
    if outcome == 'throttled':
        throttled_enqueues_total.labels(event_type=event_type).inc()

def track_lease(event_type: str, count: int = 1):
    events_leased_total.labels(event_type=event_type).inc(count)

def track_event_finished(event_type: str, status: str):
    events_finished_total.labels(event_type=event_type, status=status).inc()

def track_reaped(count: int):
    if count:
        events_reaped_total.inc(count)

def track_channel_call(channel: str, status: str, code: str, latency_ms: int):
    """Track one adapter outcome"""
    channel_calls_total.labels(channel=channel, status=status, code=code or 'ok').inc()
    if status != 'skipped':
        channel_call_duration_seconds.labels(channel=channel).observe(latency_ms / 1000.0)

def track_fx_lookup(hit: bool):
    fx_lookups_total.labels(result='hit' if hit else 'miss').inc()

# ============= METRICS ENDPOINT =============

async def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
