"""
Tests for the DispatchThread
"""

# Standard
import threading
import time

# Third Party
import pytest

# Local
from kubeloop.cache import DiffCache
from kubeloop.client import KubeEventType, KubeWatchEvent
from kubeloop.finalizer import FinalizerCoordinator
from kubeloop.requeue import RequeueScheduler
from kubeloop.snapshot import ResourceSnapshot
from kubeloop.test_helpers.helpers import (
    TEST_ENTITY_TYPE,
    library_config,
    make_resource,
    make_snapshot,
    wait_for,
)
from kubeloop.test_helpers.mocks import (
    DisabledLeadershipManager,
    MockApiClient,
    RecordingController,
    RecordingFinalizer,
)
from kubeloop.threads import DedicatedTimerThread, DispatchThread
from kubeloop.utils import ReconcileRequest, ReconcileRequestType

## Helpers #####################################################################


def make_dispatcher(
    controller=None, client=None, leadership_manager=None, queue_size=None
):
    """Build a dispatcher with a scheduler whose timer is never started, so
    scheduled requeues stay pending"""
    controller = controller or RecordingController()
    client = client or MockApiClient()
    cache = DiffCache()
    finalizers = FinalizerCoordinator(client)
    dispatcher = DispatchThread(
        TEST_ENTITY_TYPE,
        controller,
        cache,
        finalizers,
        leadership_manager=leadership_manager,
        queue_size=queue_size,
    )
    dispatcher.scheduler = RequeueScheduler(
        cache, dispatcher.push_request, timer_thread=DedicatedTimerThread()
    )
    return dispatcher, controller


def event(event_type, snapshot):
    return ReconcileRequest(type=event_type, resource=snapshot)


def terminating_entity(client, finalizer_names):
    """Create an entity carrying finalizers and request its deletion"""
    identifiers = [f"foo.bar.com/{name}finalizer" for name in finalizer_names]
    created = client.create(make_resource(name="widget", finalizers=identifiers))
    client.delete(TEST_ENTITY_TYPE, "widget", "test")
    return ResourceSnapshot(client.get(TEST_ENTITY_TYPE, "widget", "test")), created


## Classification ##############################################################


def test_dispatch_new_and_not_modified():
    dispatcher, controller = make_dispatcher()
    snapshot = make_snapshot(uid="u1")
    dispatcher.process(event(KubeEventType.ADDED, snapshot))
    again = ResourceSnapshot(snapshot.definition)
    dispatcher.process(event(KubeEventType.MODIFIED, again))
    assert controller.reconcile_count() == 1


def test_dispatch_spec_and_status_changes():
    dispatcher, controller = make_dispatcher()
    dispatcher.process(event(KubeEventType.ADDED, make_snapshot(uid="u1")))
    dispatcher.process(
        event(
            KubeEventType.MODIFIED,
            make_snapshot(uid="u1", resource_version="2", spec={"replicas": 2}),
        )
    )
    dispatcher.process(
        event(
            KubeEventType.MODIFIED,
            make_snapshot(
                uid="u1",
                resource_version="3",
                spec={"replicas": 2},
                status={"ready": True},
            ),
        )
    )
    assert [entity.resource_version for entity in controller.reconciled] == [
        "1",
        "2",
        "3",
    ]


def test_dispatch_not_leader_skips():
    dispatcher, controller = make_dispatcher(
        leadership_manager=DisabledLeadershipManager()
    )
    dispatcher.process(event(KubeEventType.ADDED, make_snapshot(uid="u1")))
    assert controller.reconcile_count() == 0
    assert len(dispatcher.cache) == 0


## Requeues ####################################################################


def test_dispatch_requeue_reconciles_cached():
    dispatcher, controller = make_dispatcher()
    snapshot = make_snapshot(uid="u1")
    dispatcher.process(event(KubeEventType.ADDED, snapshot))
    dispatcher.process(
        ReconcileRequest(
            type=ReconcileRequestType.REQUEUED, resource=snapshot, epoch=0
        )
    )
    assert controller.reconcile_count() == 2
    assert controller.reconciled[1] is snapshot


def test_dispatch_superseded_requeue_dropped():
    dispatcher, controller = make_dispatcher()
    snapshot = make_snapshot(uid="u1")
    dispatcher.process(event(KubeEventType.ADDED, snapshot))
    dispatcher.scheduler.cancel_if_scheduled("u1")
    dispatcher.process(
        ReconcileRequest(
            type=ReconcileRequestType.REQUEUED, resource=snapshot, epoch=0
        )
    )
    assert controller.reconcile_count() == 1


def test_dispatch_requeue_not_cached_dropped():
    dispatcher, controller = make_dispatcher()
    dispatcher.process(
        ReconcileRequest(
            type=ReconcileRequestType.REQUEUED,
            resource=make_snapshot(uid="u1"),
            epoch=0,
        )
    )
    assert controller.reconcile_count() == 0


def test_dispatch_reconcile_error_requeued():
    dispatcher, controller = make_dispatcher(
        controller=RecordingController(fail_reconciles=1)
    )
    dispatcher.process(event(KubeEventType.ADDED, make_snapshot(uid="u1")))
    assert controller.reconcile_count() == 1
    assert dispatcher.scheduler.pending("u1")


def test_dispatch_reconcile_error_retry_limit():
    with library_config(dispatch={"max_error_retries": 2}):
        dispatcher, _ = make_dispatcher(
            controller=RecordingController(fail_reconciles=5)
        )
        snapshot = make_snapshot(uid="u1")
        dispatcher.cache.upsert(snapshot)
        dispatcher.process(
            ReconcileRequest(
                type=ReconcileRequestType.REQUEUED,
                resource=snapshot,
                epoch=0,
                attempt=2,
            )
        )
    assert not dispatcher.scheduler.pending("u1")


def test_dispatch_no_error_requeue_without_scheduler():
    dispatcher, controller = make_dispatcher(
        controller=RecordingController(fail_reconciles=1)
    )
    dispatcher.scheduler = None
    dispatcher.process(event(KubeEventType.ADDED, make_snapshot(uid="u1")))
    assert controller.reconcile_count() == 1


## Deletion ####################################################################


def test_dispatch_finalizing_runs_finalizers_once():
    client = MockApiClient()
    dispatcher, controller = make_dispatcher(client=client)
    finalizer = RecordingFinalizer("cleanup")
    dispatcher.finalizers.register(TEST_ENTITY_TYPE, finalizer)
    terminating, _ = terminating_entity(client, ["cleanup"])

    dispatcher.process(event(KubeEventType.MODIFIED, terminating))
    assert len(finalizer.finalized) == 1
    assert controller.delete_count() == 1
    assert controller.reconcile_count() == 0
    assert client.get(TEST_ENTITY_TYPE, "widget", "test") is None

    # The removal then shows up as a DELETED event which must not run the
    # delete hook again
    dispatcher.process(event(KubeEventType.DELETED, terminating))
    assert controller.delete_count() == 1
    assert terminating.uid not in dispatcher.cache


def test_dispatch_finalizing_with_foreign_finalizer():
    """Once this engine's finalizers are done the delete hook runs, even while
    another controller's finalizer still blocks removal"""
    client = MockApiClient()
    dispatcher, controller = make_dispatcher(client=client)
    dispatcher.finalizers.register(TEST_ENTITY_TYPE, RecordingFinalizer("cleanup"))
    created = client.create(
        make_resource(
            name="widget",
            finalizers=["foo.bar.com/cleanupfinalizer", "other.io/keepfinalizer"],
        )
    )
    client.delete(TEST_ENTITY_TYPE, "widget", "test")
    terminating = ResourceSnapshot(client.get(TEST_ENTITY_TYPE, "widget", "test"))

    dispatcher.process(event(KubeEventType.MODIFIED, terminating))
    current = ResourceSnapshot(client.get(TEST_ENTITY_TYPE, "widget", "test"))
    assert current.finalizers == ("other.io/keepfinalizer",)
    assert controller.delete_count(created["metadata"]["uid"]) == 1

    # Later deliveries while still terminating don't repeat the hook
    dispatcher.process(event(KubeEventType.MODIFIED, current))
    assert controller.delete_count() == 1


def test_dispatch_finalizer_failure_requeued():
    client = MockApiClient()
    dispatcher, controller = make_dispatcher(client=client)
    finalizer = RecordingFinalizer("cleanup", fail_times=1)
    dispatcher.finalizers.register(TEST_ENTITY_TYPE, finalizer)
    terminating, _ = terminating_entity(client, ["cleanup"])

    dispatcher.process(event(KubeEventType.MODIFIED, terminating))
    assert controller.delete_count() == 0
    assert dispatcher.scheduler.pending(terminating.uid)
    current = ResourceSnapshot(client.get(TEST_ENTITY_TYPE, "widget", "test"))
    assert current.finalizers == ("foo.bar.com/cleanupfinalizer",)

    # The retry runs the finalizer again and completes the deletion
    dispatcher.process(
        ReconcileRequest(
            type=ReconcileRequestType.REQUEUED, resource=terminating, epoch=0, attempt=1
        )
    )
    assert len(finalizer.finalized) == 2
    assert controller.delete_count() == 1
    assert client.get(TEST_ENTITY_TYPE, "widget", "test") is None


def test_dispatch_deleted_without_finalizers():
    dispatcher, controller = make_dispatcher()
    snapshot = make_snapshot(uid="u1")
    dispatcher.process(event(KubeEventType.ADDED, snapshot))
    dispatcher.scheduler.schedule(snapshot, 30)
    dispatcher.process(event(KubeEventType.DELETED, snapshot))
    assert controller.delete_count("u1") == 1
    assert "u1" not in dispatcher.cache
    assert not dispatcher.scheduler.pending("u1")


def test_dispatch_reset_forgets_notified():
    client = MockApiClient()
    dispatcher, controller = make_dispatcher(client=client)
    client.create(make_resource(name="widget", finalizers=["other.io/keepfinalizer"]))
    client.delete(TEST_ENTITY_TYPE, "widget", "test")
    terminating = ResourceSnapshot(client.get(TEST_ENTITY_TYPE, "widget", "test"))
    dispatcher.process(event(KubeEventType.MODIFIED, terminating))
    assert controller.delete_count() == 1
    dispatcher.reset()
    dispatcher.process(event(KubeEventType.DELETED, terminating))
    assert controller.delete_count() == 2


def test_dispatch_relist_prunes_missing():
    """Objects missing after a reconnect are dropped and their delete hook
    runs once, even if a late DELETED arrives for them"""
    dispatcher, controller = make_dispatcher()
    kept = make_snapshot(uid="u1")
    gone = make_snapshot(uid="u2", name="gone")
    dispatcher.process(event(KubeEventType.ADDED, kept))
    dispatcher.process(event(KubeEventType.ADDED, gone))
    dispatcher.scheduler.schedule(gone, 30)

    dispatcher.push_relist(["u1"])
    dispatcher.process(dispatcher.event_queue.get_nowait())
    assert "u2" not in dispatcher.cache
    assert not dispatcher.scheduler.pending("u2")
    assert controller.delete_count("u2") == 1
    assert "u1" in dispatcher.cache
    assert controller.delete_count("u1") == 0
    assert controller.reconcile_count() == 2

    dispatcher.process(event(KubeEventType.DELETED, gone))
    assert controller.delete_count("u2") == 1


def test_dispatch_relist_bounds_notified():
    """Bookkeeping for uids that are gone is dropped on the next relist"""
    dispatcher, controller = make_dispatcher()
    dispatcher.process(event(KubeEventType.ADDED, make_snapshot(uid="u1")))
    dispatcher.process(
        ReconcileRequest(type=ReconcileRequestType.RELISTED, live_uids=frozenset())
    )
    assert dispatcher._deleted_notified == {"u1"}
    dispatcher.process(
        ReconcileRequest(type=ReconcileRequestType.RELISTED, live_uids=frozenset())
    )
    assert not dispatcher._deleted_notified
    assert controller.delete_count("u1") == 1


## Thread ######################################################################


@pytest.mark.timeout(5)
def test_dispatch_thread_processes_in_order():
    dispatcher, controller = make_dispatcher()
    dispatcher.start_thread()
    for version in range(1, 6):
        dispatcher.push_event(
            KubeWatchEvent(
                KubeEventType.MODIFIED,
                make_snapshot(
                    uid="u1",
                    resource_version=str(version),
                    spec={"replicas": version},
                ),
            )
        )
    assert wait_for(lambda: controller.reconcile_count() == 5)
    assert [entity.spec["replicas"] for entity in controller.reconciled] == [
        1,
        2,
        3,
        4,
        5,
    ]
    dispatcher.stop_thread()
    dispatcher.join(2)
    assert not dispatcher.is_alive()


@pytest.mark.timeout(5)
def test_dispatch_thread_survives_unexpected_errors():
    dispatcher, controller = make_dispatcher()
    dispatcher.start_thread()
    # A request without a resource can't be classified
    dispatcher.push_request(ReconcileRequest(type=KubeEventType.ADDED, resource=None))
    dispatcher.push_event(KubeWatchEvent(KubeEventType.ADDED, make_snapshot(uid="u2")))
    assert wait_for(lambda: controller.reconcile_count() == 1)
    dispatcher.stop_thread()
    dispatcher.join(2)


@pytest.mark.timeout(5)
def test_dispatch_stopped_drops_requests():
    dispatcher, controller = make_dispatcher()
    dispatcher.start_thread()
    dispatcher.stop_thread()
    dispatcher.join(2)
    dispatcher.push_event(KubeWatchEvent(KubeEventType.ADDED, make_snapshot()))
    assert dispatcher.event_queue.empty()
    assert controller.reconcile_count() == 0


@pytest.mark.timeout(5)
def test_dispatch_full_queue_blocks_producer():
    started = threading.Event()
    release = threading.Event()

    def block_first(ctrl, entity):
        if entity.uid == "u1":
            started.set()
            release.wait()

    dispatcher, controller = make_dispatcher(
        controller=RecordingController(on_reconcile=block_first), queue_size=1
    )
    dispatcher.start_thread()
    dispatcher.push_event(KubeWatchEvent(KubeEventType.ADDED, make_snapshot(uid="u1")))
    assert started.wait(2)

    # The consumer is busy, so this fills the queue
    dispatcher.push_event(KubeWatchEvent(KubeEventType.ADDED, make_snapshot(uid="u2")))
    producer = threading.Thread(
        target=dispatcher.push_event,
        args=(KubeWatchEvent(KubeEventType.ADDED, make_snapshot(uid="u3")),),
    )
    producer.start()
    time.sleep(0.3)
    assert producer.is_alive()
    assert dispatcher.event_queue.full()

    release.set()
    producer.join(2)
    assert not producer.is_alive()
    assert wait_for(lambda: controller.reconcile_count() == 3)
    assert [entity.uid for entity in controller.reconciled] == ["u1", "u2", "u3"]
    dispatcher.stop_thread()
    dispatcher.join(2)
