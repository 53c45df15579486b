"""
The EntityController is the contract user code implements to react to changes
of one entity type
"""

# Standard
from datetime import timedelta
from typing import Callable, Optional, Union
import abc

# First Party
import alog

# Local
from .events import EventType
from .exceptions import ConfigError
from .snapshot import ResourceSnapshot

log = alog.use_channel("CTRLR")

RequeueCallback = Callable[[ResourceSnapshot, Union[float, timedelta]], None]
AttachFinalizerCallback = Callable[[ResourceSnapshot, Optional[str]], ResourceSnapshot]
PublishEventCallback = Callable[[ResourceSnapshot, str, str, EventType], Optional[dict]]


class EntityController(abc.ABC):
    """Base class for controllers. The engine calls reconcile for every
    meaningful change of an entity and deleted once the entity is going away
    and its finalizers have run. Both hooks must be idempotent: the engine
    delivers at least once and may briefly run on two replicas during a
    leadership handover.

    Once the controller is added to an Operator, requeue, attach_finalizer
    and publish_event are bound to that Operator's engine.
    """

    _requeue_callback: Optional[RequeueCallback] = None
    _attach_callback: Optional[AttachFinalizerCallback] = None
    _publish_callback: Optional[PublishEventCallback] = None

    ## Abstract Interface ######################################################

    @abc.abstractmethod
    def reconcile(self, entity: ResourceSnapshot):
        """Drive external state toward what the entity describes

        Args:
            entity:  ResourceSnapshot
                The current state of the entity
        """

    def deleted(self, entity: ResourceSnapshot):  # noqa: B027
        """Called once when the entity is being removed. The default does
        nothing"""

    ## Bound Helpers ###########################################################

    def bind(
        self,
        requeue: RequeueCallback,
        attach_finalizer: AttachFinalizerCallback,
        publish_event: Optional[PublishEventCallback] = None,
    ):
        """Attach the engine callbacks. Called when the Operator starts"""
        self._requeue_callback = requeue
        self._attach_callback = attach_finalizer
        self._publish_callback = publish_event

    def requeue(self, entity: ResourceSnapshot, delay: Union[float, timedelta]):
        """Ask for the entity to be reconciled again after delay. A newer
        request for the same entity, or any live change to it, replaces this
        one

        Args:
            entity:  ResourceSnapshot
                The entity to reconsider
            delay:  Union[float, timedelta]
                Seconds, or a timedelta, to wait
        """
        if self._requeue_callback is None:
            raise ConfigError(f"{self} is not registered with an Operator")
        self._requeue_callback(entity, delay)

    def attach_finalizer(
        self, entity: ResourceSnapshot, finalizer_name: Optional[str] = None
    ) -> ResourceSnapshot:
        """Persist a finalizer identifier on the entity

        Args:
            entity:  ResourceSnapshot
                The entity to attach to
            finalizer_name:  Optional[str]
                Name of a registered finalizer. When omitted every finalizer
                registered for the entity's type is attached

        Returns:
            entity:  ResourceSnapshot
                The persisted entity carrying the identifier(s)
        """
        if self._attach_callback is None:
            raise ConfigError(f"{self} is not registered with an Operator")
        return self._attach_callback(entity, finalizer_name)

    def publish_event(
        self,
        entity: ResourceSnapshot,
        reason: str,
        message: str,
        event_type: EventType = EventType.NORMAL,
    ) -> Optional[dict]:
        """Record an Event against the entity. Publishing the same reason,
        message and type again bumps the count of the existing Event. A
        published Event never triggers a reconcile of the entity

        Returns:
            event:  Optional[dict]
                The persisted Event, or None if publishing failed
        """
        if self._publish_callback is None:
            raise ConfigError(f"{self} is not registered with an Operator")
        return self._publish_callback(entity, reason, message, event_type)

    def __str__(self):
        return self.__class__.__name__
