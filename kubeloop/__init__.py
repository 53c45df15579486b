"""
Package exports
"""

# Local
from . import config
from .cache import ComparisonResult, DiffCache
from .client import (
    ApiClientBase,
    DryRunApiClient,
    KubeEventType,
    KubernetesApiClient,
    KubeWatchEvent,
)
from .controller import EntityController
from .engine import Operator
from .events import EventPublisher, EventType
from .exceptions import (
    ConfigError,
    ConflictError,
    FinalizerError,
    assert_cluster,
    assert_config,
)
from .finalizer import Finalizer, FinalizerCoordinator, finalizer_identifier
from .leader_election import (
    DryRunLeadershipManager,
    LeaderState,
    LeaseLeadershipManager,
)
from .requeue import RequeueScheduler
from .snapshot import EntityType, ResourceSnapshot
