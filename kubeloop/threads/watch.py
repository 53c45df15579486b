"""
The ResourceWatcher keeps one streaming watch open per resource type and
reconnects it with exponential backoff
"""

# Standard
from typing import Callable, Optional, Set
import queue
import threading
import time

# First Party
import alog

# Local
from .. import metrics
from ..backoff import watch_backoff
from ..client import ApiClientBase, KubeWatchEvent, WatchHandle
from ..exceptions import WatchDeserializationError
from ..snapshot import EntityType
from ..utils import config_seconds

log = alog.use_channel("WATCH")

# Signal kinds passed from the stream thread to the watcher thread
_ERROR = "error"
_CLOSE = "close"
_STOP = "stop"


class ResourceWatcher:
    """Owns the watch subscription for one resource type. A background thread
    opens the stream, waits for it to end, and reconnects. Errors are split in
    two classes: payloads that can't be decoded end the subscription for good,
    everything else (API errors, transport failures, clean server closes)
    reconnects after a backoff computed from the consecutive failure count.

    The watcher can be started and stopped any number of times, which lets
    leadership changes pause and resume it.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        client: ApiClientBase,
        entity_type: EntityType,
        on_event: Callable[[KubeWatchEvent], None],
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        scheduler: Optional["RequeueScheduler"] = None,
        on_relist: Optional[Callable[[Set[str]], None]] = None,
    ):
        """
        Args:
            client:  ApiClientBase
                Client used to open the watch
            entity_type:  EntityType
                The resource type to watch
            on_event:  Callable[[KubeWatchEvent], None]
                The single consumer of events. May block to apply backpressure
            namespace:  Optional[str]
                Limit the watch to a namespace
            label_selector:  Optional[str]
                Limit the watch to objects matching a label selector
            scheduler:  Optional[RequeueScheduler]
                Scheduler whose pending requeues are preempted by live events
            on_relist:  Optional[Callable[[Set[str]], None]]
                Called before each reconnect with the uids that currently
                exist, so objects removed while disconnected can be dropped
        """
        self.client = client
        self.entity_type = entity_type
        self.on_event = on_event
        self.namespace = namespace
        self.label_selector = label_selector
        self.scheduler = scheduler
        self.on_relist = on_relist
        self.name = f"watch_thread_{entity_type.global_id}"

        self.connect_count = 0
        self.failures = 0

        self._labels = metrics.watcher_labels(entity_type, namespace)
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None
        self._signals: Optional[queue.Queue] = None
        self._handle: Optional[WatchHandle] = None

    ## Public Interface ########################################################

    def start(self):
        """Start watching. A no-op if already running"""
        with self._lock:
            if (
                self._thread
                and self._thread.is_alive()
                and not self._stop_event.is_set()
            ):
                return
            self._stop_event = threading.Event()
            self._signals = queue.Queue()
            self._thread = threading.Thread(
                name=self.name,
                target=self._run,
                args=(self._stop_event, self._signals),
                daemon=True,
            )
            log.info("Starting ResourceWatcher: %s", self.name)
            self._thread.start()

    def stop(self):
        """Stop watching. Cancels the subscription and any backoff wait. Safe
        to call before start and more than once"""
        with self._lock:
            if self._stop_event is None or self._stop_event.is_set():
                return
            log.info("Stopping ResourceWatcher: %s", self.name)
            self._stop_event.set()
            self._signals.put((None, _STOP, None))
            handle = self._handle
        if handle:
            handle.stop()

    def join(self, timeout: Optional[float] = None):
        """Wait for the watcher thread to exit"""
        thread = self._thread
        if thread and thread.ident:
            thread.join(timeout)

    def is_running(self) -> bool:
        thread = self._thread
        return bool(thread and thread.is_alive() and not self._stop_event.is_set())

    ## Implementation Details ##################################################

    def _run(self, stop_event: threading.Event, signals: queue.Queue):
        metrics.watcher_running.labels(**self._labels).set(1)
        try:
            self._watch_loop(stop_event, signals)
        finally:
            metrics.watcher_running.labels(**self._labels).set(0)
            log.debug("ResourceWatcher %s exited", self.name)

    def _watch_loop(self, stop_event: threading.Event, signals: queue.Queue):
        timeout = config_seconds("watch.server_timeout")
        failure_reset = config_seconds("watch.failure_reset")
        attempt = 0
        while not stop_event.is_set():
            attempt += 1
            self.connect_count += 1
            if attempt > 1:
                self._relist()
            opened_at = time.monotonic()
            log.debug2("Opening watch %s (attempt %d)", self.name, self.connect_count)
            handle = self._open(attempt, timeout, signals)
            with self._lock:
                self._handle = handle
            if stop_event.is_set():
                handle.stop()
                return

            # Ignore signals left behind by earlier subscriptions
            signal_attempt, kind, payload = signals.get()
            while signal_attempt not in (attempt, None):
                signal_attempt, kind, payload = signals.get()

            handle.stop()
            if kind == _STOP:
                return

            if time.monotonic() - opened_at >= failure_reset:
                self.failures = 0

            if kind == _CLOSE:
                metrics.watcher_closed.labels(**self._labels).inc()
                delay = watch_backoff(self.failures)
                log.debug(
                    "Watch %s closed by server, reconnecting in %ss", self.name, delay
                )
            else:
                metrics.watcher_exceptions.labels(
                    **self._labels, exception=type(payload).__name__
                ).inc()
                if isinstance(payload, WatchDeserializationError):
                    log.error(
                        "Watch %s received an undecodable payload, not reconnecting: "
                        "%s",
                        self.name,
                        payload,
                    )
                    return
                self.failures += 1
                delay = watch_backoff(self.failures)
                log.warning(
                    "Watch %s failed (%d consecutive): %s. Reconnecting in %ss",
                    self.name,
                    self.failures,
                    payload,
                    delay,
                )

            if self._wait_for_reconnect(stop_event, delay):
                return

    def _open(self, attempt: int, timeout: float, signals: queue.Queue) -> WatchHandle:
        """Open a subscription whose end is reported on the signal queue"""
        try:
            return self.client.watch(
                self.entity_type,
                timeout=timeout,
                on_event=self._handle_event,
                on_error=lambda err: signals.put((attempt, _ERROR, err)),
                on_close=lambda: signals.put((attempt, _CLOSE, None)),
                namespace=self.namespace,
                label_selector=self.label_selector,
            )
        except Exception as err:  # pylint: disable=broad-exception-caught
            # Failing to open is handled like a stream failure
            signals.put((attempt, _ERROR, err))
            return _ClosedHandle()

    def _relist(self):
        """Report the uids that exist right before the stream is reopened. A
        failed list only skips pruning, the reconnect still happens"""
        if self.on_relist is None:
            return
        try:
            resources = self.client.list(
                self.entity_type,
                namespace=self.namespace,
                label_selector=self.label_selector,
            )
        except Exception:  # pylint: disable=broad-exception-caught
            log.warning("Relist for %s failed", self.name, exc_info=True)
            return
        live_uids = {
            resource.get("metadata", {}).get("uid") for resource in resources
        }
        live_uids.discard(None)
        log.debug2("Relisted %d objects for %s", len(live_uids), self.name)
        self.on_relist(live_uids)

    def _handle_event(self, event: KubeWatchEvent):
        self.failures = 0
        metrics.watcher_events.labels(
            **self._labels, event_type=event.type.value
        ).inc()
        log.debug3(
            "Watch %s received %s %s", self.name, event.type.value, event.resource
        )
        if self.scheduler is not None and event.resource.uid:
            self.scheduler.cancel_if_scheduled(event.resource.uid)
        self.on_event(event)

    def _wait_for_reconnect(self, stop_event: threading.Event, delay: float) -> bool:
        """Wait before reconnecting

        Returns:
            stopped:  bool
                True if the watcher was stopped during the wait
        """
        if delay <= 0:
            return stop_event.is_set()
        return stop_event.wait(delay)


class _ClosedHandle:
    """Stand in for a subscription that never opened"""

    def stop(self):
        pass
