"""
Immutable views of cluster objects and the types they belong to
"""

# Standard
from dataclasses import dataclass
from functools import cached_property
from typing import Any, Iterable, Optional, Tuple
import copy

# Local
from . import constants
from .utils import obj_to_hash


@dataclass(eq=True, frozen=True)
class EntityType:
    """The group/version/kind of a resource type managed by the engine"""

    group: str
    version: str
    kind: str
    plural: Optional[str] = None

    @property
    def api_version(self) -> str:
        """The apiVersion string for objects of this type. The core group has
        no group prefix
        """
        if self.group:
            return f"{self.group}/{self.version}"
        return self.version

    @property
    def global_id(self) -> str:
        """Get the global_id for the type in the form kind.version.group"""
        return ".".join(part for part in [self.kind, self.version, self.group] if part)

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> "EntityType":
        """Build an EntityType from an apiVersion string and kind"""
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    def __str__(self):
        return self.global_id


class ResourceSnapshot:
    """An immutable copy of one cluster object. The definition is deep copied
    on construction and every accessor hands out copies or immutable values, so
    a snapshot can be shared between threads without further locking.
    """

    def __init__(self, definition: dict):
        self._definition = copy.deepcopy(definition)
        self._metadata = self._definition.setdefault("metadata", {})

    ## Identity ################################################################

    @property
    def uid(self) -> Optional[str]:
        return self._metadata.get("uid")

    @property
    def name(self) -> Optional[str]:
        return self._metadata.get("name")

    @property
    def namespace(self) -> Optional[str]:
        return self._metadata.get("namespace")

    @property
    def kind(self) -> Optional[str]:
        return self._definition.get("kind")

    @property
    def api_version(self) -> Optional[str]:
        return self._definition.get("apiVersion")

    @property
    def entity_type(self) -> EntityType:
        return EntityType.from_api_version(self.api_version or "", self.kind)

    @property
    def key(self) -> str:
        """Human readable namespace/name key used in logs"""
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return str(self.name)

    ## Change Tracking #########################################################

    @property
    def resource_version(self) -> Optional[str]:
        return self._metadata.get("resourceVersion")

    @property
    def deletion_timestamp(self) -> Optional[str]:
        return self._metadata.get("deletionTimestamp")

    @property
    def finalizers(self) -> Tuple[str, ...]:
        return tuple(self._metadata.get("finalizers") or [])

    @cached_property
    def spec_hash(self) -> str:
        """Hash of everything that describes intent: metadata without the
        fields the server bumps on every write, plus all top level fields
        other than status
        """
        metadata = {
            key: value
            for key, value in self._metadata.items()
            if key not in constants.VOLATILE_METADATA_FIELDS
        }
        body = {
            key: value
            for key, value in self._definition.items()
            if key not in ("metadata", "status")
        }
        return obj_to_hash({"metadata": metadata, "body": body})

    @cached_property
    def status_hash(self) -> str:
        """Hash of the status payload"""
        return obj_to_hash(self._definition.get("status"))

    ## Payload #################################################################

    @property
    def metadata(self) -> dict:
        return copy.deepcopy(self._metadata)

    @property
    def spec(self) -> dict:
        return copy.deepcopy(self._definition.get("spec", {}))

    @property
    def status(self) -> dict:
        return copy.deepcopy(self._definition.get("status", {}))

    @property
    def definition(self) -> dict:
        """A mutable deep copy of the full object"""
        return copy.deepcopy(self._definition)

    def get(self, *args, **kwargs) -> Any:
        """Pass get calls through to a copy of the definition"""
        return self.definition.get(*args, **kwargs)

    def with_finalizers(self, finalizers: Iterable[str]) -> "ResourceSnapshot":
        """Return a new snapshot with the finalizer list replaced"""
        definition = self.definition
        definition["metadata"]["finalizers"] = list(finalizers)
        return ResourceSnapshot(definition)

    ## Dunder Functions ########################################################

    def __str__(self):
        return f"{self.kind}({self.key}@{self.resource_version})"

    def __repr__(self):
        return f"ResourceSnapshot({self._definition})"

    def __eq__(self, other):
        return (
            isinstance(other, ResourceSnapshot)
            and self._definition == other._definition
        )

    def __hash__(self):
        return hash((self.uid, self.resource_version))
