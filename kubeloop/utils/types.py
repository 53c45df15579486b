"""Standard data types used through the engine"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, FrozenSet, Optional, Union

### Reconcile Enums


class ReconcileRequestType(Enum):
    """Enum to expand the possible KubeEventTypes to include engine specific
    events"""

    # Used for events that are a requeue of an object
    REQUEUED = "REQUEUED"

    # Sent after a watch reconnects, carrying the uids that currently exist
    RELISTED = "RELISTED"

    # Used as a sentinel to alert threads to stop
    STOPPED = "STOPPED"


### Reconcile Classes


@dataclass
class ReconcileRequest:
    """One unit of work on a DispatchThread's queue. Live watch events and
    scheduler re-entries both travel as ReconcileRequests so they share one
    ordered path.
    """

    type: Union[ReconcileRequestType, "KubeEventType"]
    resource: Optional["ResourceSnapshot"] = None
    # Requeue generation at scheduling time. Only set for REQUEUED requests
    epoch: Optional[int] = None
    # Number of consecutive failed attempts that led to this request
    attempt: int = 0
    # Uids listed after a reconnect. Only set for RELISTED requests
    live_uids: Optional[FrozenSet[str]] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def uid(self) -> Optional[str]:
        """Get the uid of the resource being reconciled"""
        return self.resource.uid if self.resource else None


### Timer Data Classes


@dataclass(order=True)
class TimerEvent:
    """Class for keeping track of an item in the timer queue. Time is the
    only comparable field to support the TimerThreads priority queue"""

    time: datetime
    action: Any = field(compare=False)
    args: tuple = field(default_factory=tuple, compare=False)
    kwargs: dict = field(default_factory=dict, compare=False)
    stale: bool = field(default=False, compare=False)

    def cancel(self):
        """Cancel this event. It will not be executed when read from the
        queue"""
        self.stale = True


### Helper Classes


class Singleton(type):
    """MetaClass to limit a class to only one global instance. The first
    instance is remembered and returned on every later call. Classes may set
    _disable_singleton = True to get a fresh instance per call.
    """

    _instances = {}

    def __call__(cls, *args, **kwargs):
        if getattr(cls, "_disable_singleton", False):
            return type.__call__(cls, *args, **kwargs)

        if cls not in cls._instances:
            cls._instances[cls] = super(Singleton, cls).__call__(*args, **kwargs)
        return cls._instances[cls]

    @classmethod
    def reset(mcs):
        """Forget every created instance"""
        mcs._instances.clear()
