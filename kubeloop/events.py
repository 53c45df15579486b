"""
The EventPublisher records core/v1 Events against entities. Repeated
publications of the same event for the same entity bump the count and
lastTimestamp of one Event object instead of creating new ones.
"""

# Standard
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
import hashlib

# First Party
import alog

# Local
from . import config, constants
from .client import ApiClientBase
from .exceptions import ConflictError, KubeloopError
from .snapshot import EntityType, ResourceSnapshot
from .utils import get_pod_name

log = alog.use_channel("EVENTS")

EVENT_ENTITY_TYPE = EntityType(group="", version="v1", kind="Event")


class EventType(Enum):
    NORMAL = "Normal"
    WARNING = "Warning"


class EventPublisher:
    """Publishes Events through an ApiClient. Events are auxiliary: a failure
    to publish is logged and never fails the reconcile that asked for it.
    """

    def __init__(self, client: ApiClientBase, component: Optional[str] = None):
        """
        Args:
            client:  ApiClientBase
                Client used to read and write the Event objects
            component:  Optional[str]
                Reporting component. Defaults to the operator_name config
        """
        self.client = client
        self.component = component or config.operator_name
        self._instance: Optional[str] = None

    ## Public Interface ########################################################

    def publish(
        self,
        entity: ResourceSnapshot,
        reason: str,
        message: str,
        event_type: EventType = EventType.NORMAL,
    ) -> Optional[dict]:
        """Create the Event for this entity, reason, message and type, or bump
        the count of the existing one

        Args:
            entity:  ResourceSnapshot
                The entity the event is about
            reason:  str
                Machine readable reason such as "Reconciled"
            message:  str
                Human readable description
            event_type:  EventType
                Normal or Warning

        Returns:
            event:  Optional[dict]
                The persisted Event, or None if it could not be published
        """
        if (
            entity.api_version == EVENT_ENTITY_TYPE.api_version
            and entity.kind == EVENT_ENTITY_TYPE.kind
        ):
            log.debug2("Not publishing an event about event %s", entity.name)
            return None

        message = truncate_message(message)
        namespace = entity.namespace or constants.DEFAULT_NAMESPACE
        original_name, name = event_name(entity, namespace, reason, message, event_type)
        log.debug3("Publishing event %s as %s", original_name, name)

        for attempt in range(1, constants.EVENT_PUBLISH_ATTEMPTS + 1):
            try:
                return self._save(
                    entity, namespace, name, original_name, reason, message, event_type
                )
            except ConflictError:
                log.debug2(
                    "Conflict publishing event %s on attempt %d", original_name, attempt
                )
            except KubeloopError as err:
                log.warning(
                    "Failed to publish event %s on %s/%s: %s",
                    reason,
                    entity.kind,
                    entity.name,
                    err,
                )
                return None

        log.warning(
            "Gave up publishing event %s on %s/%s after %d conflicts",
            reason,
            entity.kind,
            entity.name,
            constants.EVENT_PUBLISH_ATTEMPTS,
        )
        return None

    ## Implementation Details ##################################################

    @property
    def instance(self) -> str:
        if self._instance is None:
            self._instance = get_pod_name()
        return self._instance

    def _save(  # pylint: disable=too-many-arguments
        self,
        entity: ResourceSnapshot,
        namespace: str,
        name: str,
        original_name: str,
        reason: str,
        message: str,
        event_type: EventType,
    ) -> dict:
        now = datetime.now(timezone.utc).strftime(constants.EVENT_TIME_FORMAT)
        current = self.client.get(EVENT_ENTITY_TYPE, name, namespace)
        if current is not None:
            current["count"] = current.get("count", 0) + 1
            current["lastTimestamp"] = now
            saved = self.client.update(current)
        else:
            saved = self.client.create(
                {
                    "apiVersion": EVENT_ENTITY_TYPE.api_version,
                    "kind": EVENT_ENTITY_TYPE.kind,
                    "metadata": {
                        "name": name,
                        "namespace": namespace,
                        "annotations": {
                            "originalName": original_name,
                            "nameHash": "sha512",
                            "nameEncoding": "Hex String",
                        },
                    },
                    "type": event_type.value,
                    "reason": reason,
                    "message": message,
                    "reportingComponent": self.component,
                    "reportingInstance": self.instance,
                    "source": {"component": self.component},
                    "involvedObject": {
                        "apiVersion": entity.api_version,
                        "kind": entity.kind,
                        "name": entity.name,
                        "namespace": entity.namespace,
                        "uid": entity.uid,
                        "resourceVersion": entity.resource_version,
                    },
                    "firstTimestamp": now,
                    "lastTimestamp": now,
                    "count": 1,
                }
            )
        log.debug(
            "Published event %s on %s/%s with count %d",
            reason,
            entity.kind,
            entity.name,
            saved.get("count", 0),
        )
        return saved


## Helpers #####################################################################


def event_name(
    entity: ResourceSnapshot,
    namespace: str,
    reason: str,
    message: str,
    event_type: EventType,
):
    """Get the readable name of an event and the hex sha512 digest used as
    the Event object's name. Publications that share every part map to the
    same Event
    """
    original_name = ".".join(
        [
            entity.uid or "",
            entity.name or "",
            namespace,
            reason,
            message,
            event_type.value,
        ]
    )
    return original_name, hashlib.sha512(original_name.encode("utf-8")).hexdigest()


def truncate_message(message: str) -> str:
    """Shorten a message beyond the limit by cutting out its middle"""
    limit = constants.EVENT_MESSAGE_MAX_LENGTH
    if len(message) <= limit:
        return message
    infix = constants.EVENT_MESSAGE_CUT_INFIX
    head = (limit - len(infix)) // 2
    tail = limit - len(infix) - head
    return f"{message[:head]}{infix}{message[-tail:]}"
