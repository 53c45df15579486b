"""
This ApiClient is responsible for delegating cluster operations to the
openshift DynamicClient and the kubernetes watch library. It is the one that
will be used when the operator is running in the cluster or outside the
cluster making live changes.
"""
# Standard
from typing import Iterator, List, Optional
import json

# Third Party
from kubernetes.watch import Watch
from openshift.dynamic import DynamicClient
from openshift.dynamic.exceptions import ConflictError as DynamicConflictError
from openshift.dynamic.exceptions import (
    NotFoundError,
    ResourceNotFoundError,
    ResourceNotUniqueError,
)
from openshift.dynamic.resource import Resource
import kubernetes

# First Party
import alog

# Local
from ..exceptions import ClusterError, ConflictError, WatchDeserializationError
from ..snapshot import EntityType
from .base import ApiClientBase, WatchHandle
from .kube_event import KubeWatchEvent

log = alog.use_channel("KUBECL")

# Client side read timeout for a watch stream. See
# https://github.com/kubernetes-client/python/blob/master/examples/watch/timeout-settings.md
CLIENT_WATCH_TIMEOUT = 30


class KubernetesApiClient(ApiClientBase):
    """This ApiClient uses the openshift DynamicClient to interact with the
    cluster
    """

    def __init__(self, dynamic_client: Optional[DynamicClient] = None):
        self._client = dynamic_client

    @property
    def client(self) -> DynamicClient:
        """Lazy property access to the client"""
        if self._client is None:
            self._client = self._setup_client()
        return self._client

    ## CRUD ####################################################################

    def get(
        self, entity_type: EntityType, name: str, namespace: Optional[str] = None
    ) -> Optional[dict]:
        resource = self._get_resource_handle(entity_type)
        try:
            return resource.get(name=name, namespace=namespace).to_dict()
        except NotFoundError:
            log.debug2("No object %s/%s of type %s", namespace, name, entity_type)
            return None

    def list(
        self,
        entity_type: EntityType,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[dict]:
        resource = self._get_resource_handle(entity_type)
        try:
            result = resource.get(namespace=namespace, label_selector=label_selector)
        except NotFoundError:
            return []
        return result.to_dict().get("items", [])

    def create(self, definition: dict) -> dict:
        resource = self._get_resource_handle(self._entity_type(definition))
        namespace = definition.get("metadata", {}).get("namespace")
        try:
            return resource.create(body=definition, namespace=namespace).to_dict()
        except DynamicConflictError as err:
            raise ConflictError(str(err)) from err

    def update(self, definition: dict) -> dict:
        resource = self._get_resource_handle(self._entity_type(definition))
        namespace = definition.get("metadata", {}).get("namespace")
        try:
            return resource.replace(body=definition, namespace=namespace).to_dict()
        except DynamicConflictError as err:
            raise ConflictError(str(err)) from err

    def delete(
        self, entity_type: EntityType, name: str, namespace: Optional[str] = None
    ) -> bool:
        resource = self._get_resource_handle(entity_type)
        try:
            resource.delete(name=name, namespace=namespace)
        except NotFoundError:
            return False
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
        resource = self._get_resource_handle(entity_type)
        kubernetes_watch = Watch()
        handle.add_stop_hook(kubernetes_watch.stop)

        stream_kwargs = {"serialize": False, "_request_timeout": CLIENT_WATCH_TIMEOUT}
        if timeout:
            stream_kwargs["timeout_seconds"] = max(1, int(timeout))
        if namespace:
            stream_kwargs["namespace"] = namespace
        if label_selector:
            stream_kwargs["label_selector"] = label_selector

        try:
            for event_obj in kubernetes_watch.stream(resource.get, **stream_kwargs):
                yield KubeWatchEvent.from_payload(event_obj)
        except json.JSONDecodeError as err:
            raise WatchDeserializationError(
                f"Unable to decode watch payload for {entity_type}: {err}"
            ) from err

    ## Implementation Details ##################################################

    def _get_resource_handle(self, entity_type: EntityType) -> Resource:
        """Get the openshift resource handle for an entity type"""
        try:
            return self.client.resources.get(
                kind=entity_type.kind, api_version=entity_type.api_version
            )
        except (ResourceNotFoundError, ResourceNotUniqueError) as err:
            raise ClusterError(
                f"Failed to fetch resource handle for {entity_type}"
            ) from err

    @staticmethod
    def _entity_type(definition: dict) -> EntityType:
        return EntityType.from_api_version(
            definition.get("apiVersion", ""), definition.get("kind")
        )

    @staticmethod
    def _setup_client() -> DynamicClient:
        """Create a DynamicClient that will work based on where the operator is
        running
        """
        try:
            log.debug2("Running with in-cluster config")
            kube_config = kubernetes.client.Configuration()
            kubernetes.config.load_incluster_config(client_configuration=kube_config)
            return DynamicClient(kubernetes.client.ApiClient(kube_config))
        except kubernetes.config.ConfigException:
            log.debug2("Running with out-of-cluster config")
            return DynamicClient(kubernetes.config.new_client_from_config())
