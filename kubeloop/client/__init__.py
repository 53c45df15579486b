"""
Api clients used by the engine to talk to the control plane
"""

# Local
from .base import ApiClientBase, WatchHandle
from .dry_run_client import DryRunApiClient
from .kube_event import KubeEventType, KubeWatchEvent
from .kubernetes_client import KubernetesApiClient
