"""
End to end tests for the Operator running against the DryRunApiClient
"""
# Standard
import threading
import time

# Third Party
from prometheus_client import REGISTRY
import pytest

# Local
from kubeloop import config
from kubeloop.engine import Operator
from kubeloop.events import EVENT_ENTITY_TYPE, EventType
from kubeloop.exceptions import ConfigError
from kubeloop.leader_election import DryRunLeadershipManager
from kubeloop.snapshot import EntityType, ResourceSnapshot
from kubeloop.test_helpers.helpers import (
    TEST_ENTITY_TYPE,
    library_config,
    make_resource,
    wait_for,
)
from kubeloop.test_helpers.mocks import (
    DisabledLeadershipManager,
    MockApiClient,
    RecordingController,
    RecordingFinalizer,
)

## Helpers #####################################################################

FINALIZER_ID = "foo.bar.com/cleanupfinalizer"


def attach_cleanup(controller, entity):
    """Reconcile body that makes sure the cleanup finalizer is attached"""
    if FINALIZER_ID not in entity.finalizers and not entity.deletion_timestamp:
        controller.attach_finalizer(entity, "cleanup")


@pytest.fixture
def client():
    return MockApiClient()


@pytest.fixture
def operators():
    """Track started operators and stop them after the test"""
    started = []
    yield started
    for operator in started:
        operator.stop()


def start_operator(operators, client, controller, leadership_manager=None, **kwargs):
    operator = Operator(
        client=client,
        leadership_manager=leadership_manager or DryRunLeadershipManager(),
        name="test",
    )
    operator.add_controller(TEST_ENTITY_TYPE, controller, **kwargs)
    operators.append(operator)
    return operator


def get_widget(client, name="widget"):
    current = client.get(TEST_ENTITY_TYPE, name, "test")
    return ResourceSnapshot(current) if current else None


## Lifecycle ###################################################################


@pytest.mark.timeout(10)
def test_finalizer_lifecycle(client, operators):
    """Create, attach, delete, finalize once, delete hook once, gone"""
    controller = RecordingController(on_reconcile=attach_cleanup)
    finalizer = RecordingFinalizer("cleanup")
    operator = start_operator(operators, client, controller)
    operator.add_finalizer(TEST_ENTITY_TYPE, finalizer)
    operator.start()

    client.create(make_resource(name="widget"))
    assert wait_for(
        lambda: get_widget(client) and get_widget(client).finalizers == (FINALIZER_ID,)
    )
    uid = get_widget(client).uid
    assert wait_for(lambda: operator.get_cache(TEST_ENTITY_TYPE).get(uid) is not None)
    assert wait_for(
        lambda: FINALIZER_ID
        in operator.get_cache(TEST_ENTITY_TYPE).get(uid).finalizers
    )

    client.delete(TEST_ENTITY_TYPE, "widget", "test")
    assert wait_for(lambda: get_widget(client) is None)
    assert wait_for(lambda: controller.delete_count(uid) == 1)
    assert wait_for(lambda: uid not in operator.get_cache(TEST_ENTITY_TYPE))

    # Let any trailing events drain
    time.sleep(0.3)
    assert len(finalizer.finalized) == 1
    assert controller.delete_count(uid) == 1


@pytest.mark.timeout(10)
def test_reconcile_on_change_only(client, operators):
    controller = RecordingController()
    operator = start_operator(operators, client, controller)
    operator.start()

    client.create(make_resource(name="widget"))
    assert wait_for(lambda: controller.reconcile_count() == 1)

    # A no-op write doesn't produce an event
    client.update(client.get(TEST_ENTITY_TYPE, "widget", "test"))
    current = client.get(TEST_ENTITY_TYPE, "widget", "test")
    current["spec"]["replicas"] = 3
    client.update(current)
    assert wait_for(lambda: controller.reconcile_count() == 2)
    time.sleep(0.3)
    assert controller.reconcile_count() == 2
    assert controller.reconciled[-1].spec == {"replicas": 3}


@pytest.mark.timeout(10)
def test_delete_without_finalizers_calls_hook(client, operators):
    controller = RecordingController()
    operator = start_operator(operators, client, controller)
    operator.start()
    created = client.create(make_resource(name="widget"))
    assert wait_for(lambda: controller.reconcile_count() == 1)
    client.delete(TEST_ENTITY_TYPE, "widget", "test")
    assert wait_for(lambda: controller.delete_count(created["metadata"]["uid"]) == 1)


## Requeues ####################################################################


@pytest.mark.timeout(10)
def test_requeue_reconciles_again(client, operators):
    def requeue_once(ctrl, entity):
        if ctrl.reconcile_count() == 1:
            ctrl.requeue(entity, 0.1)

    controller = RecordingController(on_reconcile=requeue_once)
    operator = start_operator(operators, client, controller)
    operator.start()
    client.create(make_resource(name="widget"))
    assert wait_for(lambda: controller.reconcile_count() == 2)
    time.sleep(0.3)
    assert controller.reconcile_count() == 2


@pytest.mark.timeout(10)
def test_requeue_superseded_by_live_event(client, operators):
    """A change that arrives before the requeue fires replaces it"""

    def requeue_first(ctrl, entity):
        if ctrl.reconcile_count() == 1:
            ctrl.requeue(entity, 1)

    controller = RecordingController(on_reconcile=requeue_first)
    operator = start_operator(operators, client, controller)
    operator.start()
    client.create(make_resource(name="widget"))
    assert wait_for(lambda: controller.reconcile_count() == 1)
    uid = get_widget(client).uid
    assert wait_for(lambda: operator.get_scheduler(TEST_ENTITY_TYPE).pending(uid))

    current = client.get(TEST_ENTITY_TYPE, "widget", "test")
    current["spec"]["replicas"] = 2
    client.update(current)
    assert wait_for(lambda: controller.reconcile_count() == 2)
    assert not operator.get_scheduler(TEST_ENTITY_TYPE).pending(uid)
    time.sleep(1.3)
    assert controller.reconcile_count() == 2


@pytest.mark.timeout(10)
def test_requeue_fires_after_another_operator_stopped(client, operators):
    """Stopping one Operator leaves the requeue timer of the next one running"""
    first = start_operator(operators, client, RecordingController())
    first.start()
    first.stop()
    assert wait_for(lambda: not first.timer_thread.is_alive())

    def requeue_once(ctrl, entity):
        if ctrl.reconcile_count() == 1:
            ctrl.requeue(entity, 0.1)

    controller = RecordingController(on_reconcile=requeue_once)
    second = start_operator(operators, client, controller)
    second.start()
    assert second.timer_thread is not first.timer_thread
    client.create(make_resource(name="widget"))
    assert wait_for(lambda: controller.reconcile_count() == 2)


@pytest.mark.timeout(10)
def test_failed_reconcile_retried(client, operators):
    controller = RecordingController(fail_reconciles=1)
    with library_config(watch={"base_backoff": "0.1s"}):
        operator = start_operator(operators, client, controller)
        operator.start()
        client.create(make_resource(name="widget"))
        assert wait_for(lambda: controller.reconcile_count() == 2)


## Leadership ##################################################################


@pytest.mark.timeout(10)
def test_not_leader_does_nothing(client, operators):
    controller = RecordingController()
    operator = start_operator(
        operators, client, controller, leadership_manager=DisabledLeadershipManager()
    )
    operator.start()
    client.create(make_resource(name="widget"))
    time.sleep(0.5)
    assert controller.reconcile_count() == 0
    assert not operator.get_watcher(TEST_ENTITY_TYPE).is_running()


@pytest.mark.timeout(10)
def test_leadership_handover_relists(client, operators):
    """Losing leadership stops watching and drops the cache. Regaining it
    replays the current state"""
    leadership_manager = DryRunLeadershipManager()
    controller = RecordingController()
    operator = start_operator(
        operators, client, controller, leadership_manager=leadership_manager
    )
    operator.start()
    client.create(make_resource(name="widget"))
    assert wait_for(lambda: controller.reconcile_count() == 1)

    leadership_manager.release()
    assert wait_for(lambda: not operator.get_watcher(TEST_ENTITY_TYPE).is_running())
    assert len(operator.get_cache(TEST_ENTITY_TYPE)) == 0

    leadership_manager.acquire()
    assert wait_for(lambda: controller.reconcile_count() == 2)


def leader_gauge():
    return REGISTRY.get_sample_value(
        "kubeloop_leader", {"operator": config.operator_name}
    )


@pytest.mark.timeout(10)
def test_leader_gauge_follows_operator_leadership(client, operators):
    """Only an Operator holding leadership reports itself as leader"""
    follower = start_operator(
        operators,
        client,
        RecordingController(),
        leadership_manager=DisabledLeadershipManager(),
    )
    follower.start()
    assert leader_gauge() == 0
    follower.stop()
    assert leader_gauge() == 0

    leadership_manager = DryRunLeadershipManager()
    leader = start_operator(
        operators, client, RecordingController(), leadership_manager=leadership_manager
    )
    leader.start()
    assert wait_for(lambda: leader_gauge() == 1)
    leadership_manager.release()
    assert wait_for(lambda: leader_gauge() == 0)
    leadership_manager.acquire()
    assert wait_for(lambda: leader_gauge() == 1)
    leader.stop()
    assert leader_gauge() == 0


## Events ######################################################################


@pytest.mark.timeout(10)
def test_reconcile_publishes_event(client, operators):
    def publish(ctrl, entity):
        ctrl.publish_event(entity, "Scaled", "Scaled to 1", EventType.WARNING)

    controller = RecordingController(on_reconcile=publish)
    operator = start_operator(operators, client, controller)
    operator.start()
    created = client.create(make_resource(name="widget"))
    assert wait_for(lambda: len(client.list(EVENT_ENTITY_TYPE, namespace="test")) == 1)

    event = client.list(EVENT_ENTITY_TYPE, namespace="test")[0]
    assert event["type"] == "Warning"
    assert event["reason"] == "Scaled"
    assert event["source"] == {"component": "test"}
    assert event["involvedObject"]["uid"] == created["metadata"]["uid"]

    # Events don't feed back into the watched type
    time.sleep(0.3)
    assert controller.reconcile_count() == 1


## Registration ################################################################


def test_duplicate_controller_rejected(client):
    operator = Operator(client=client, leadership_manager=DryRunLeadershipManager())
    operator.add_controller(TEST_ENTITY_TYPE, RecordingController())
    with pytest.raises(ConfigError):
        operator.add_controller(TEST_ENTITY_TYPE, RecordingController())


def test_start_without_controllers_rejected(client):
    operator = Operator(client=client, leadership_manager=DryRunLeadershipManager())
    with pytest.raises(ConfigError):
        operator.start()


@pytest.mark.timeout(10)
def test_register_after_start_rejected(client, operators):
    operator = start_operator(operators, client, RecordingController())
    operator.start()
    other_type = EntityType("other.com", "v1", "Gadget")
    with pytest.raises(ConfigError):
        operator.add_controller(other_type, RecordingController())
    with pytest.raises(ConfigError):
        operator.add_finalizer(TEST_ENTITY_TYPE, RecordingFinalizer("late"))


@pytest.mark.timeout(10)
def test_attach_unknown_finalizer_rejected(client, operators):
    errors = []

    def attach_unknown(ctrl, entity):
        try:
            ctrl.attach_finalizer(entity, "missing")
        except ConfigError as err:
            errors.append(err)

    operator = start_operator(
        operators, client, RecordingController(on_reconcile=attach_unknown)
    )
    operator.start()
    client.create(make_resource(name="widget"))
    assert wait_for(lambda: len(errors) == 1)


def test_lookup_unregistered_type(client):
    operator = Operator(client=client, leadership_manager=DryRunLeadershipManager())
    with pytest.raises(ConfigError):
        operator.get_cache(TEST_ENTITY_TYPE)


def test_default_leadership_from_config(client):
    operator = Operator(client=client)
    operator.add_controller(TEST_ENTITY_TYPE, RecordingController())
    with library_config(leader_election={"enabled": False}):
        operator.start()
    try:
        assert isinstance(operator.leadership_manager, DryRunLeadershipManager)
        assert operator.leadership_manager.is_leader()
    finally:
        operator.stop()


## Shutdown ####################################################################


@pytest.mark.timeout(10)
def test_stop_is_clean_and_idempotent(client):
    controller = RecordingController()
    operator = Operator(client=client, leadership_manager=DryRunLeadershipManager())
    operator.add_controller(TEST_ENTITY_TYPE, controller, namespace="test")
    operator.start()
    client.create(make_resource(name="widget"))
    assert wait_for(lambda: controller.reconcile_count() == 1)

    operator.stop()
    operator.stop()
    operator.wait()
    assert operator.shutdown.is_set()
    assert not operator.get_watcher(TEST_ENTITY_TYPE).is_running()
    assert not operator.get_dispatcher(TEST_ENTITY_TYPE).is_alive()
    assert not operator.leadership_manager.is_leader()

    # Changes after stop are not delivered
    current = client.get(TEST_ENTITY_TYPE, "widget", "test")
    current["spec"]["replicas"] = 5
    client.update(current)
    time.sleep(0.3)
    assert controller.reconcile_count() == 1


@pytest.mark.timeout(10)
def test_stop_waits_for_inflight_reconcile(client, operators):
    started = threading.Event()
    release = threading.Event()
    shutdown_at_finish = []

    def block(ctrl, entity):
        started.set()
        release.wait()
        shutdown_at_finish.append(operator.shutdown.is_set())

    controller = RecordingController(on_reconcile=block)
    operator = start_operator(operators, client, controller)
    operator.start()
    client.create(make_resource(name="widget"))
    assert started.wait(5)

    stopper = threading.Thread(target=operator.stop)
    stopper.start()
    time.sleep(0.3)
    assert stopper.is_alive()
    assert not operator.shutdown.is_set()

    release.set()
    stopper.join(5)
    assert not stopper.is_alive()
    assert shutdown_at_finish == [False]
    assert operator.shutdown.is_set()
    assert not operator.get_dispatcher(TEST_ENTITY_TYPE).is_alive()
