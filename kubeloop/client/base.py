"""
This defines the base class for all ApiClient types along with the handle
returned from a watch subscription
"""

# Standard
from typing import Callable, Iterator, List, Optional
import abc
import threading

# First Party
import alog

# Local
from ..snapshot import EntityType
from .kube_event import KubeWatchEvent

log = alog.use_channel("CLIENT")

EventCallback = Callable[[KubeWatchEvent], None]
ErrorCallback = Callable[[Exception], None]
CloseCallback = Callable[[], None]


class WatchHandle:
    """Handle to one running watch subscription. The stream is consumed on a
    dedicated daemon thread which forwards each event to on_event. Exactly one
    of on_close or on_error is called when the stream ends, unless the
    subscription was stopped locally.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        name: str,
        stream_factory: Callable[["WatchHandle"], Iterator[KubeWatchEvent]],
        on_event: EventCallback,
        on_error: ErrorCallback,
        on_close: CloseCallback,
        stop_event: Optional[threading.Event] = None,
    ):
        self.name = name
        self._stream_factory = stream_factory
        self._on_event = on_event
        self._on_error = on_error
        self._on_close = on_close
        self.stopped = stop_event or threading.Event()
        self._stop_hooks: List[Callable[[], None]] = []
        self._thread = threading.Thread(name=name, target=self._run, daemon=True)

    ## Public Interface ########################################################

    def start(self) -> "WatchHandle":
        """Start consuming the stream"""
        self._thread.start()
        return self

    def stop(self):
        """Stop the subscription. Safe to call any number of times"""
        if self.stopped.is_set():
            return
        log.debug2("Stopping watch %s", self.name)
        self.stopped.set()
        for hook in self._stop_hooks:
            hook()

    def add_stop_hook(self, hook: Callable[[], None]):
        """Register a callable that interrupts the underlying stream on stop"""
        self._stop_hooks.append(hook)
        if self.stopped.is_set():
            hook()

    def join(self, timeout: Optional[float] = None):
        """Wait for the stream thread to exit"""
        if self._thread.ident:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    ## Implementation Details ##################################################

    def _run(self):
        stream = None
        try:
            stream = self._stream_factory(self)
            for event in stream:
                if self.stopped.is_set():
                    break
                self._on_event(event)
        except Exception as err:  # pylint: disable=broad-exception-caught
            if self.stopped.is_set():
                log.debug2("Watch %s raised after stop: %s", self.name, err)
                return
            log.debug("Watch %s ended with error: %s", self.name, err)
            self._on_error(err)
            return
        finally:
            if hasattr(stream, "close"):
                stream.close()

        if self.stopped.is_set():
            log.debug2("Watch %s stopped", self.name)
            return
        log.debug2("Watch %s closed by server", self.name)
        self._on_close()


class ApiClientBase(abc.ABC):
    """
    Base class for api clients which carry out CRUD and watch operations
    against the control plane. Writes are conditional: when a definition
    carries metadata.resourceVersion that no longer matches the stored object,
    the write raises ConflictError.
    """

    ## Watch ###################################################################

    def watch(  # pylint: disable=too-many-arguments
        self,
        entity_type: EntityType,
        timeout: Optional[float],
        on_event: EventCallback,
        on_error: ErrorCallback,
        on_close: CloseCallback,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> WatchHandle:
        """Open a streaming watch for a resource type. The initial state of
        every matching object is delivered as ADDED events before any changes.

        Args:
            entity_type:  EntityType
                The type of resource to watch
            timeout:  Optional[float]
                Server side timeout in seconds after which the stream closes
            on_event:  EventCallback
                Called with each KubeWatchEvent
            on_error:  ErrorCallback
                Called with the exception if the stream fails
            on_close:  CloseCallback
                Called when the server closes the stream cleanly
            namespace:  Optional[str]
                Limit the watch to one namespace
            label_selector:  Optional[str]
                Limit the watch to objects matching the selector
            stop_event:  Optional[threading.Event]
                Event that is set when the subscription is cancelled

        Returns:
            handle:  WatchHandle
                The running subscription
        """
        name = f"watch_{entity_type.global_id}"
        if namespace:
            name = f"{name}_{namespace}"

        def stream_factory(handle: WatchHandle) -> Iterator[KubeWatchEvent]:
            return self._stream(
                entity_type,
                timeout=timeout,
                namespace=namespace,
                label_selector=label_selector,
                handle=handle,
            )

        return WatchHandle(
            name=name,
            stream_factory=stream_factory,
            on_event=on_event,
            on_error=on_error,
            on_close=on_close,
            stop_event=stop_event,
        ).start()

    @abc.abstractmethod
    def _stream(  # pylint: disable=too-many-arguments
        self,
        entity_type: EntityType,
        timeout: Optional[float],
        namespace: Optional[str],
        label_selector: Optional[str],
        handle: WatchHandle,
    ) -> Iterator[KubeWatchEvent]:
        """Yield events until the stream ends. Implementations should register
        a stop hook on the handle that interrupts any blocking read.
        """

    ## CRUD ####################################################################

    @abc.abstractmethod
    def get(
        self, entity_type: EntityType, name: str, namespace: Optional[str] = None
    ) -> Optional[dict]:
        """Fetch the current state of a single object

        Returns:
            current_state:  Optional[dict]
                The object's definition or None if it doesn't exist
        """

    @abc.abstractmethod
    def list(
        self,
        entity_type: EntityType,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[dict]:
        """Fetch every object of a type that matches the selector"""

    @abc.abstractmethod
    def create(self, definition: dict) -> dict:
        """Create an object. Raises ConflictError if it already exists

        Returns:
            created:  dict
                The stored object including server populated metadata
        """

    @abc.abstractmethod
    def update(self, definition: dict) -> dict:
        """Replace an object. Raises ConflictError when the definition's
        resourceVersion is stale

        Returns:
            updated:  dict
                The stored object including the new resourceVersion
        """

    @abc.abstractmethod
    def delete(
        self, entity_type: EntityType, name: str, namespace: Optional[str] = None
    ) -> bool:
        """Request deletion of an object. Objects with finalizers only get a
        deletionTimestamp until the finalizers are removed

        Returns:
            found:  bool
                False if the object did not exist
        """
