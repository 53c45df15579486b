"""
Mock and recording implementations of engine classes used by the tests
"""
# Standard
from typing import Callable, Iterator, List, Optional
import threading

# First Party
import alog

# Local
from ..client import DryRunApiClient, WatchHandle
from ..controller import EntityController
from ..exceptions import ConflictError
from ..finalizer import Finalizer
from ..leader_election import LeadershipManagerBase
from ..snapshot import EntityType, ResourceSnapshot
from ..threads import ResourceWatcher

log = alog.use_channel("TEST")

ReconcileHook = Callable[[EntityController, ResourceSnapshot], None]


### Mock Classes


class DisabledLeadershipManager(LeadershipManagerBase):
    """Leadership Manager that is never leader"""

    def acquire(self, force: bool = False) -> bool:
        return False

    def release(self):
        pass


class RecordingController(EntityController):
    """Controller that records every hook invocation. An optional callable
    runs inside reconcile, and the first fail_reconciles calls raise"""

    def __init__(
        self,
        on_reconcile: Optional[ReconcileHook] = None,
        fail_reconciles: int = 0,
        fail_deletes: int = 0,
    ):
        self.on_reconcile = on_reconcile
        self.fail_reconciles = fail_reconciles
        self.fail_deletes = fail_deletes
        self.reconciled: List[ResourceSnapshot] = []
        self.deleted_entities: List[ResourceSnapshot] = []
        self.lock = threading.Lock()

    def reconcile(self, entity: ResourceSnapshot):
        with self.lock:
            self.reconciled.append(entity)
            should_fail = self.fail_reconciles > 0
            if should_fail:
                self.fail_reconciles -= 1
        if should_fail:
            raise RuntimeError(f"Injected reconcile failure for {entity}")
        if self.on_reconcile:
            self.on_reconcile(self, entity)

    def deleted(self, entity: ResourceSnapshot):
        with self.lock:
            self.deleted_entities.append(entity)
            should_fail = self.fail_deletes > 0
            if should_fail:
                self.fail_deletes -= 1
        if should_fail:
            raise RuntimeError(f"Injected delete failure for {entity}")

    def reconcile_count(self, uid: Optional[str] = None) -> int:
        with self.lock:
            return len(
                [
                    entity
                    for entity in self.reconciled
                    if uid is None or entity.uid == uid
                ]
            )

    def delete_count(self, uid: Optional[str] = None) -> int:
        with self.lock:
            return len(
                [
                    entity
                    for entity in self.deleted_entities
                    if uid is None or entity.uid == uid
                ]
            )


class RecordingFinalizer(Finalizer):
    """Finalizer that records the entities it cleaned up. It raises while
    fail_times is positive, and waits on the barrier when one is given so
    tests can prove cleanups overlap"""

    def __init__(
        self,
        name: str,
        fail_times: int = 0,
        barrier: Optional[threading.Barrier] = None,
    ):
        self.name = name
        self.fail_times = fail_times
        self.barrier = barrier
        self.finalized: List[ResourceSnapshot] = []
        self.lock = threading.Lock()

    def finalize(self, entity: ResourceSnapshot):
        if self.barrier is not None:
            self.barrier.wait()
        with self.lock:
            self.finalized.append(entity)
            should_fail = self.fail_times > 0
            if should_fail:
                self.fail_times -= 1
        if should_fail:
            raise RuntimeError(f"Injected failure in finalizer {self.name}")


class MockApiClient(DryRunApiClient):
    """DryRunApiClient with failure injection. Each entry in stream_errors is
    raised by the next watch stream in turn, and each entry in update_errors
    is raised by the next update. Successful updates are counted"""

    def __init__(
        self,
        resources: Optional[List[dict]] = None,
        stream_errors: Optional[List[Exception]] = None,
        update_errors: Optional[List[Exception]] = None,
    ):
        super().__init__(resources)
        self.stream_errors = list(stream_errors or [])
        self.update_errors = list(update_errors or [])
        self.streams_opened = 0
        self.update_count = 0
        self.failed_updates = 0
        self._mock_lock = threading.Lock()

    def conflict_next_update(self):
        """Make the next update lose a resourceVersion race"""
        with self._mock_lock:
            self.update_errors.append(ConflictError("Injected conflict"))

    def update(self, definition: dict) -> dict:
        with self._mock_lock:
            error = self.update_errors.pop(0) if self.update_errors else None
        if error is not None:
            self.failed_updates += 1
            raise error
        updated = super().update(definition)
        with self._mock_lock:
            self.update_count += 1
        return updated

    def _stream(  # pylint: disable=too-many-arguments
        self,
        entity_type: EntityType,
        timeout: Optional[float],
        namespace: Optional[str],
        label_selector: Optional[str],
        handle: WatchHandle,
    ) -> Iterator:
        with self._mock_lock:
            self.streams_opened += 1
            error = self.stream_errors.pop(0) if self.stream_errors else None
        if error is not None:
            raise error
        yield from super()._stream(
            entity_type, timeout, namespace, label_selector, handle
        )


class RecordingResourceWatcher(ResourceWatcher):
    """ResourceWatcher that records each reconnect wait instead of sleeping"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.waits: List[float] = []

    def _wait_for_reconnect(self, stop_event: threading.Event, delay: float) -> bool:
        self.waits.append(delay)
        return stop_event.is_set()
