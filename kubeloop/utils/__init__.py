"""
Shared utilities and types
"""

# Local
from .common import (
    config_seconds,
    get_operator_namespace,
    get_pod_name,
    nested_get,
    obj_to_hash,
    parse_time_delta,
    to_seconds,
)
from .types import (
    ReconcileRequest,
    ReconcileRequestType,
    Singleton,
    TimerEvent,
)
