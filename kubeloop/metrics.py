"""
Prometheus metrics exposed by the engine
"""

# Third Party
from prometheus_client import Counter, Gauge, start_http_server

# First Party
import alog

# Local
from . import config
from .snapshot import EntityType

log = alog.use_channel("METRICS")

WATCHER_LABELS = ["operator", "kind", "group", "version", "scope"]

watcher_running = Gauge(
    "kubeloop_watcher_running",
    "Whether the resource watcher is currently running",
    labelnames=WATCHER_LABELS,
)
watcher_events = Counter(
    "kubeloop_watcher_events_total",
    "Number of watch events received",
    labelnames=WATCHER_LABELS + ["event_type"],
)
watcher_exceptions = Counter(
    "kubeloop_watcher_exceptions_total",
    "Number of errors raised by the watch stream",
    labelnames=WATCHER_LABELS + ["exception"],
)
watcher_closed = Counter(
    "kubeloop_watcher_closed_total",
    "Number of times the server closed the watch stream",
    labelnames=WATCHER_LABELS,
)
reconciles = Counter(
    "kubeloop_reconcile_total",
    "Number of dispatched events by outcome",
    labelnames=["operator", "kind", "result"],
)
leader = Gauge(
    "kubeloop_leader",
    "Whether this instance currently holds the leadership lease",
    labelnames=["operator"],
)


def watcher_labels(entity_type: EntityType, namespace: str = None) -> dict:
    """Build the shared label set for one resource watcher"""
    return {
        "operator": config.operator_name,
        "kind": entity_type.kind,
        "group": entity_type.group,
        "version": entity_type.version,
        "scope": namespace or "cluster",
    }


def start_metrics_server():
    """Start the prometheus http server if metrics are enabled"""
    if not config.metrics.enabled:
        log.debug("Metrics server disabled")
        return
    log.info("Starting metrics server on port %d", config.metrics.port)
    start_http_server(config.metrics.port)
