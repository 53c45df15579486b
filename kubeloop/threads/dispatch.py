"""
The DispatchThread drains the event queue for one resource type and invokes the
user's controller and finalizers
"""

# Standard
from typing import Iterable, Optional, Set
import queue

# First Party
import alog

# Local
from .. import config, metrics
from ..backoff import watch_backoff
from ..cache import ComparisonResult, DiffCache
from ..client import KubeEventType, KubeWatchEvent
from ..leader_election import LeadershipManagerBase
from ..snapshot import EntityType, ResourceSnapshot
from ..utils import ReconcileRequest, ReconcileRequestType
from .base import ThreadBase

log = alog.use_channel("DSPTCH")


class DispatchThread(ThreadBase):
    """One DispatchThread runs per resource type. Live watch events and fired
    requeues share a bounded queue, and this thread is its only consumer, so
    events for one object are classified and handled in the order they were
    received. Producers block when the queue is full.

    All handling is skipped while this process is not the leader.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        entity_type: EntityType,
        controller: "EntityController",
        cache: DiffCache,
        finalizers: "FinalizerCoordinator",
        leadership_manager: Optional[LeadershipManagerBase] = None,
        scheduler: Optional["RequeueScheduler"] = None,
        queue_size: Optional[int] = None,
    ):
        """
        Args:
            entity_type:  EntityType
                The resource type this thread handles
            controller:  EntityController
                User controller invoked for changes and deletions
            cache:  DiffCache
                The cache used to classify incoming snapshots
            finalizers:  FinalizerCoordinator
                Runs cleanups when deletion intent is observed
            leadership_manager:  Optional[LeadershipManagerBase]
                Gate for all handling
            scheduler:  Optional[RequeueScheduler]
                Used for error requeues and to check for superseded requeues
            queue_size:  Optional[int]
                Bound of the event queue. Defaults to dispatch.queue_size
        """
        super().__init__(
            name=f"dispatch_thread_{entity_type.global_id}",
            daemon=True,
            leadership_manager=leadership_manager,
        )
        self.entity_type = entity_type
        self.controller = controller
        self.cache = cache
        self.finalizers = finalizers
        self.scheduler = scheduler
        self.event_queue = queue.Queue(maxsize=queue_size or config.dispatch.queue_size)

        # uids whose delete hook already ran while they were finalizing
        self._deleted_notified: Set[str] = set()

    ## Public Interface ########################################################

    def reset(self):
        """Forget per object bookkeeping. Used when leadership is lost and the
        cache is cleared"""
        self._deleted_notified.clear()

    def push_event(self, event: KubeWatchEvent):
        """Queue a live watch event. Blocks while the queue is full"""
        self.push_request(ReconcileRequest(type=event.type, resource=event.resource))

    def push_relist(self, live_uids: Iterable[str]):
        """Queue the uids that exist after a watch reconnect. Cached objects
        missing from them are handled as deleted"""
        self.push_request(
            ReconcileRequest(
                type=ReconcileRequestType.RELISTED, live_uids=frozenset(live_uids)
            )
        )

    def push_request(self, request: ReconcileRequest):
        """Queue a request. Blocks while the queue is full"""
        if self.should_stop():
            log.debug2("Dispatcher stopped, dropping %s", request.type)
            return
        self.event_queue.put(request)

    ## Thread Interface ########################################################

    def run(self):
        """Process one request at a time until stopped"""
        while True:
            request = self.event_queue.get()
            if self.should_stop() or request.type == ReconcileRequestType.STOPPED:
                log.debug("Shutting down %s", self.name)
                return

            try:
                self.process(request)
            except Exception:  # pylint: disable=broad-exception-caught
                log.error(
                    "Unexpected error dispatching %s for %s",
                    request.type,
                    request.resource,
                    exc_info=True,
                )

    def stop_thread(self):
        """Stop after the request currently being handled. Requests still
        queued are discarded"""
        super().stop_thread()
        try:
            self.event_queue.put_nowait(
                ReconcileRequest(type=ReconcileRequestType.STOPPED)
            )
        except queue.Full:
            log.debug2(
                "Queue full on shutdown, %s will stop after this request", self.name
            )

    ## Dispatching #############################################################

    def process(self, request: ReconcileRequest):
        """Route one request based on its type and classification"""
        if not self.is_leader():
            log.debug2("Not leader, skipping %s for %s", request.type, request.resource)
            self._count("skipped")
            return

        if request.type == KubeEventType.DELETED:
            self._handle_deleted(request.resource)
        elif request.type == ReconcileRequestType.REQUEUED:
            self._handle_requeue(request)
        elif request.type == ReconcileRequestType.RELISTED:
            self._handle_relisted(request.live_uids or frozenset())
        else:
            stored, result = self.cache.upsert(request.resource)
            log.debug2(
                "%s %s classified as %s", request.type.value, stored, result.value
            )
            if result == ComparisonResult.NOT_MODIFIED:
                self._count("not_modified")
            elif result == ComparisonResult.FINALIZING:
                self._handle_finalizing(stored, request.attempt)
            else:
                self._reconcile(stored, request.attempt)

    ## Implementation Details ##################################################

    def _handle_requeue(self, request: ReconcileRequest):
        uid = request.uid()
        if self.scheduler is not None and not self.scheduler.is_current(
            uid, request.epoch
        ):
            log.debug2("Requeue of %s superseded by a live event", request.resource)
            return

        snapshot = self.cache.get(uid)
        if snapshot is None:
            log.debug("Requeued %s no longer cached, dropping", request.resource)
            return

        if snapshot.deletion_timestamp:
            self._handle_finalizing(snapshot, request.attempt)
        else:
            self._reconcile(snapshot, request.attempt)

    def _handle_finalizing(self, snapshot: ResourceSnapshot, attempt: int):
        pending = self.finalizers.pending(snapshot)
        if pending:
            log.info("Running finalizers %s for %s", pending, snapshot)
            try:
                snapshot = self.finalizers.finalize(snapshot)
            except Exception:  # pylint: disable=broad-exception-caught
                log.error(
                    "Finalizing %s %s failed, it stays terminating",
                    self.entity_type.kind,
                    snapshot.key,
                    exc_info=True,
                    extra={"resource": snapshot},
                )
                self._count("finalize_error")
                self._requeue_error(snapshot, attempt)
                return
            self._count("finalized")

        self._notify_deleted(snapshot, attempt)

    def _handle_deleted(self, snapshot: ResourceSnapshot):
        uid = snapshot.uid
        self.cache.remove(uid)
        if self.scheduler is not None:
            self.scheduler.forget(uid)

        if uid not in self._deleted_notified:
            self._notify_deleted(snapshot, attempt=0)
        self._deleted_notified.discard(uid)

    def _handle_relisted(self, live_uids: frozenset):
        """Objects removed while the watch was disconnected never produce a
        DELETED event. Drop them here and run their delete hook"""
        pruned = set()
        for snapshot in self.cache.snapshots():
            if snapshot.uid in live_uids:
                continue
            log.info("%s was removed while the watch was disconnected", snapshot)
            self.cache.remove(snapshot.uid)
            if self.scheduler is not None:
                self.scheduler.forget(snapshot.uid)
            self._notify_deleted(snapshot, attempt=0)
            pruned.add(snapshot.uid)

        # Keep the pruned uids until the next relist so a late DELETED for
        # one of them doesn't run the hook twice
        self._deleted_notified = {
            uid
            for uid in self._deleted_notified
            if uid in live_uids or uid in pruned
        }

    def _notify_deleted(self, snapshot: ResourceSnapshot, attempt: int):
        """Run the delete hook at most once per uid"""
        if snapshot.uid in self._deleted_notified:
            return
        try:
            self.controller.deleted(snapshot)
        except Exception:  # pylint: disable=broad-exception-caught
            log.error(
                "Delete hook for %s %s failed",
                self.entity_type.kind,
                snapshot.key,
                exc_info=True,
                extra={"resource": snapshot},
            )
            self._count("error")
            self._requeue_error(snapshot, attempt)
            return
        self._deleted_notified.add(snapshot.uid)
        self._count("deleted")

    def _reconcile(self, snapshot: ResourceSnapshot, attempt: int):
        log.debug("Reconciling %s", snapshot)
        try:
            self.controller.reconcile(snapshot)
        except Exception:  # pylint: disable=broad-exception-caught
            log.error(
                "Reconcile of %s %s failed",
                self.entity_type.kind,
                snapshot.key,
                exc_info=True,
                extra={"resource": snapshot},
            )
            self._count("error")
            self._requeue_error(snapshot, attempt)
            return
        self._count("reconciled")

    def _requeue_error(self, snapshot: ResourceSnapshot, attempt: int):
        """Retry a failed object with backoff up to the configured limit"""
        max_retries = config.dispatch.max_error_retries
        if self.scheduler is None or attempt >= max_retries:
            log.debug2("Not retrying %s after %d attempts", snapshot, attempt)
            return
        delay = watch_backoff(attempt + 1)
        log.debug("Retrying %s in %ss (attempt %d)", snapshot, delay, attempt + 1)
        self.scheduler.schedule(snapshot, delay, attempt=attempt + 1)

    def _count(self, result: str):
        metrics.reconciles.labels(
            operator=config.operator_name,
            kind=self.entity_type.kind,
            result=result,
        ).inc()
