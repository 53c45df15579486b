"""
The DryRunApiClient implements the ApiClient interface but does not actually
interact with the cluster and instead holds the state of the cluster in a local
map. Resource versions are strictly enforced so conflict handling behaves the
way it does against a real control plane.
"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from queue import Empty, Queue
from threading import RLock
from typing import Dict, Iterator, List, Optional
import copy
import itertools
import operator
import uuid

# First Party
import alog

# Local
from ..exceptions import ClusterError, ConflictError
from ..snapshot import EntityType, ResourceSnapshot
from .base import ApiClientBase, WatchHandle
from .kube_event import KubeEventType, KubeWatchEvent

log = alog.use_channel("DRY-RUN")

# Sentinel pushed onto a subscription queue to wake it up on stop
_STOP = object()

# How often an idle subscription re-checks its deadline
_POLL_SECONDS = 0.1


@dataclass
class _Subscription:
    """One registered dry run watch"""

    entity_type: EntityType
    namespace: Optional[str]
    label_selector: Optional[str]
    events: Queue = field(default_factory=Queue)

    def matches(self, resource: dict) -> bool:
        metadata = resource.get("metadata", {})
        if resource.get("apiVersion") != self.entity_type.api_version:
            return False
        if resource.get("kind") != self.entity_type.kind:
            return False
        if self.namespace and metadata.get("namespace") != self.namespace:
            return False
        if self.label_selector and not _match_selector(
            metadata.get("labels") or {}, self.label_selector
        ):
            return False
        return True


class DryRunApiClient(ApiClientBase):
    """
    Api client which doesn't actually talk to a cluster!
    """

    def __init__(self, resources: Optional[List[dict]] = None):
        """Construct with an optional set of resources that already exist"""
        self._cluster_content: Dict[tuple, dict] = {}
        self._subscriptions: List[_Subscription] = []
        self._lock = RLock()
        self._versions = itertools.count(1)
        for resource in resources or []:
            self.create(resource)

    ## CRUD ####################################################################

    def get(
        self, entity_type: EntityType, name: str, namespace: Optional[str] = None
    ) -> Optional[dict]:
        log.debug2("DRY RUN get of [%s/%s] in [%s]", entity_type, name, namespace)
        with self._lock:
            current = self._cluster_content.get(
                self._key(entity_type.api_version, entity_type.kind, namespace, name)
            )
            return copy.deepcopy(current)

    def list(
        self,
        entity_type: EntityType,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[dict]:
        log.debug2("DRY RUN list of [%s] in [%s]", entity_type, namespace)
        matcher = _Subscription(entity_type, namespace, label_selector)
        with self._lock:
            return [
                copy.deepcopy(resource)
                for resource in self._cluster_content.values()
                if matcher.matches(resource)
            ]

    def create(self, definition: dict) -> dict:
        resource = copy.deepcopy(definition)
        metadata = resource.setdefault("metadata", {})
        key = self._resource_key(resource)
        log.debug("DRY RUN create %s", key)
        with self._lock:
            if key in self._cluster_content:
                raise ConflictError(f"Resource {key} already exists")
            metadata.setdefault("uid", str(uuid.uuid4()))
            metadata.setdefault("creationTimestamp", self._now())
            metadata.pop("deletionTimestamp", None)
            metadata["resourceVersion"] = self._next_version()
            self._cluster_content[key] = resource
            self._notify(KubeEventType.ADDED, resource)
            return copy.deepcopy(resource)

    def update(self, definition: dict) -> dict:
        resource = copy.deepcopy(definition)
        metadata = resource.setdefault("metadata", {})
        key = self._resource_key(resource)
        log.debug("DRY RUN update %s", key)
        with self._lock:
            current = self._cluster_content.get(key)
            if current is None:
                raise ClusterError(f"Resource {key} not found")

            current_metadata = current["metadata"]
            requested_version = metadata.get("resourceVersion")
            if (
                requested_version
                and requested_version != current_metadata["resourceVersion"]
            ):
                log.debug(
                    "DRY RUN conflict on %s: %s != %s",
                    key,
                    requested_version,
                    current_metadata["resourceVersion"],
                )
                raise ConflictError(
                    f"Resource {key} has been modified, resourceVersion "
                    f"{requested_version} is stale"
                )

            # The server owns these fields and ignores client changes to them
            for server_field in ["uid", "creationTimestamp", "deletionTimestamp"]:
                if server_field in current_metadata:
                    metadata[server_field] = current_metadata[server_field]
                else:
                    metadata.pop(server_field, None)
            metadata["resourceVersion"] = current_metadata["resourceVersion"]

            # No-op writes don't produce a new revision
            if resource == current:
                log.debug2("DRY RUN update of %s made no changes", key)
                return copy.deepcopy(current)

            metadata["resourceVersion"] = self._next_version()
            self._cluster_content[key] = resource
            self._notify(KubeEventType.MODIFIED, resource)

            if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
                self._remove(key)
            return copy.deepcopy(resource)

    def delete(
        self, entity_type: EntityType, name: str, namespace: Optional[str] = None
    ) -> bool:
        key = self._key(entity_type.api_version, entity_type.kind, namespace, name)
        log.debug("DRY RUN delete %s", key)
        with self._lock:
            current = self._cluster_content.get(key)
            if current is None:
                return False

            metadata = current["metadata"]
            if not metadata.get("finalizers"):
                self._remove(key)
                return True

            if not metadata.get("deletionTimestamp"):
                resource = copy.deepcopy(current)
                resource["metadata"]["deletionTimestamp"] = self._now()
                resource["metadata"]["deletionGracePeriodSeconds"] = 0
                resource["metadata"]["resourceVersion"] = self._next_version()
                self._cluster_content[key] = resource
                self._notify(KubeEventType.MODIFIED, resource)
            return True

    ## Watch ###################################################################

    def _stream(  # pylint: disable=too-many-arguments
        self,
        entity_type: EntityType,
        timeout: Optional[float],
        namespace: Optional[str],
        label_selector: Optional[str],
        handle: WatchHandle,
    ) -> Iterator[KubeWatchEvent]:
        subscription = _Subscription(entity_type, namespace, label_selector)
        handle.add_stop_hook(lambda: subscription.events.put(_STOP))

        # Register and list under the same lock so no change is missed between
        # the initial state and the stream
        with self._lock:
            initial = [
                copy.deepcopy(resource)
                for resource in self._cluster_content.values()
                if subscription.matches(resource)
            ]
            self._subscriptions.append(subscription)

        try:
            for resource in initial:
                yield KubeWatchEvent(KubeEventType.ADDED, ResourceSnapshot(resource))

            end_time = datetime.max
            if timeout:
                end_time = datetime.now() + timedelta(seconds=timeout)

            while not handle.stopped.is_set() and datetime.now() < end_time:
                try:
                    event = subscription.events.get(timeout=_POLL_SECONDS)
                except Empty:
                    continue
                if event is _STOP:
                    return
                log.debug3("DRY RUN yielding event %s", event)
                yield event
        finally:
            with self._lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

    ## Implementation Details ##################################################

    def _notify(self, event_type: KubeEventType, resource: dict):
        """Push an event to every matching subscription. Must hold the lock"""
        for subscription in self._subscriptions:
            if subscription.matches(resource):
                subscription.events.put(
                    KubeWatchEvent(event_type, ResourceSnapshot(resource))
                )

    def _remove(self, key: tuple):
        """Remove an object and notify watchers. Must hold the lock"""
        resource = self._cluster_content.pop(key)
        self._notify(KubeEventType.DELETED, resource)

    def _next_version(self) -> str:
        return str(next(self._versions))

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    @staticmethod
    def _key(api_version, kind, namespace, name) -> tuple:
        return (api_version or "", kind or "", namespace or "", name or "")

    @classmethod
    def _resource_key(cls, resource: dict) -> tuple:
        metadata = resource.get("metadata", {})
        return cls._key(
            resource.get("apiVersion"),
            resource.get("kind"),
            metadata.get("namespace"),
            metadata.get("name"),
        )


## Selectors ###################################################################


def _match_selector(values: dict, value_selector: str) -> bool:
    """Determine if a set of labels matches a kubernetes label selector. For the
    complete documentation regarding selectors see:
    https://kubernetes.io/docs/concepts/overview/working-with-objects/labels/#syntax-and-character-set
    """

    def _in(actual, expected):
        return actual in expected

    def _not_in(actual, expected):
        return actual not in expected

    def _exists(actual, _):
        return actual is not None

    def _not_exists(actual, _):
        return actual is None

    # Spaces are required to distinguish the set operators from label text.
    # Longer operators are tried first so "!=" isn't split as "=".
    binary_ops = [
        (" notin ", _not_in),
        (" in ", _in),
        ("==", operator.eq),
        ("!=", operator.ne),
        ("=", operator.eq),
    ]

    for selector in _split_selectors(value_selector):
        selector = selector.strip()
        action, expected_key, expected_value = None, None, None
        for op_str, op_func in binary_ops:
            parts = selector.split(op_str)
            if len(parts) != 2:
                continue
            action = op_func
            expected_key = parts[0].strip()
            if op_str.strip() in ("in", "notin"):
                expected_value = [
                    item.strip() for item in parts[1].strip(" ()").split(",")
                ]
            else:
                expected_value = parts[1].strip()
            break

        if action is None:
            if selector.startswith("!"):
                action, expected_key = _not_exists, selector[1:].strip()
            else:
                action, expected_key = _exists, selector

        value = values.get(expected_key)
        value = str(value).strip() if value is not None else value
        if not action(value, expected_value):
            log.debug3(
                "Label %s=%s does not match selector %s", expected_key, value, selector
            )
            return False

    return True


def _split_selectors(selector: str = "") -> List[str]:
    """Split up selectors by , but ignoring those surrounded by () e.g.
    'app,app in (frontend, backend)' becomes ['app','app in (frontend, backend)']
    """
    output_list = []
    current_selector = ""
    in_paren = False
    for char in selector:
        if char == "," and not in_paren:
            output_list.append(current_selector)
            current_selector = ""
            continue
        if char == "(":
            in_paren = True
        elif char == ")":
            in_paren = False
        current_selector += char
    if current_selector:
        output_list.append(current_selector)
    return output_list
