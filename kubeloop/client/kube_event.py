"""
Change events produced by a watch subscription, and the parsing of the raw
payloads the control plane streams
"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

# Local
from ..exceptions import ClusterError, WatchDeserializationError
from ..snapshot import ResourceSnapshot


class KubeEventType(Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class KubeWatchEvent:
    """A single change observed on the stream. It is never persisted"""

    type: KubeEventType
    resource: ResourceSnapshot
    received: datetime = field(default_factory=datetime.now)

    @property
    def uid(self) -> Optional[str]:
        return self.resource.uid

    @classmethod
    def from_payload(cls, payload: Any) -> "KubeWatchEvent":
        """Build an event from one decoded watch payload

        Server side ERROR payloads, such as an expired resourceVersion, raise a
        ClusterError so that the subscription is reopened. Anything that can't
        be read as an event raises a WatchDeserializationError.

        Args:
            payload:  Any
                The decoded payload with a "type" and a "raw_object" or
                "object" entry

        Returns:
            event:  KubeWatchEvent
                The parsed event
        """
        if not isinstance(payload, dict) or "type" not in payload:
            raise WatchDeserializationError(f"Malformed watch event: {payload}")

        event_type = payload["type"]
        raw_object = payload.get("raw_object", payload.get("object"))
        if event_type == "ERROR":
            raise ClusterError(f"Watch returned error status: {raw_object}")
        if not isinstance(raw_object, dict):
            raise WatchDeserializationError(f"Malformed watch object: {raw_object}")
        try:
            parsed_type = KubeEventType(event_type)
        except ValueError as err:
            raise WatchDeserializationError(
                f"Unknown watch event type: {event_type}"
            ) from err
        return cls(parsed_type, ResourceSnapshot(raw_object))
