"""
Tests for the LeaseLeadershipManager
"""
# Standard
from datetime import datetime, timedelta, timezone
from unittest import mock
import time

# Third Party
import pytest

# Local
from kubeloop import constants
from kubeloop.client import DryRunApiClient
from kubeloop.exceptions import ClusterError, ConflictError
from kubeloop.leader_election import LeaderState, LeaseLeadershipManager
from kubeloop.leader_election.lease import LEASE_TYPE
from kubeloop.test_helpers.helpers import library_config

## Helpers #####################################################################

LEASE_NAME = "test-leadership"
NAMESPACE = "test"


def make_manager(client, identity="pod-a"):
    return LeaseLeadershipManager(
        client, lease_name=LEASE_NAME, namespace=NAMESPACE, identity=identity
    )


def make_lease(holder, renewed_at, duration=15, transitions=1):
    return {
        "apiVersion": constants.LEASE_API_VERSION,
        "kind": constants.LEASE_KIND,
        "metadata": {"name": LEASE_NAME, "namespace": NAMESPACE},
        "spec": {
            "holderIdentity": holder,
            "acquireTime": renewed_at.strftime(constants.LEASE_TIME_FORMAT),
            "renewTime": renewed_at.strftime(constants.LEASE_TIME_FORMAT),
            "leaseDurationSeconds": duration,
            "leaseTransitions": transitions,
        },
    }


def current_lease(client):
    return client.get(LEASE_TYPE, LEASE_NAME, NAMESPACE)


def now():
    return datetime.now(timezone.utc)


## Tests #######################################################################


def test_lease_created_when_missing():
    client = DryRunApiClient()
    manager = make_manager(client)
    manager.tick()
    assert manager.is_leader()
    lease = current_lease(client)
    assert lease["spec"]["holderIdentity"] == "pod-a"
    assert lease["spec"]["leaseTransitions"] == 0
    assert lease["spec"]["leaseDurationSeconds"] == 15


def test_lease_renewed_by_holder():
    client = DryRunApiClient()
    manager = make_manager(client)
    manager.tick()
    first = current_lease(client)
    time.sleep(0.01)
    manager.tick()
    renewed = current_lease(client)
    assert manager.is_leader()
    assert renewed["spec"]["renewTime"] > first["spec"]["renewTime"]
    assert renewed["spec"]["acquireTime"] == first["spec"]["acquireTime"]
    assert renewed["spec"]["leaseTransitions"] == 0


def test_lease_held_by_other():
    client = DryRunApiClient([make_lease("pod-b", now())])
    manager = make_manager(client)
    manager.tick()
    assert not manager.is_leader()
    assert current_lease(client)["spec"]["holderIdentity"] == "pod-b"


def test_lease_expired_takeover():
    client = DryRunApiClient(
        [make_lease("pod-b", now() - timedelta(seconds=60), transitions=3)]
    )
    manager = make_manager(client)
    manager.tick()
    assert manager.is_leader()
    lease = current_lease(client)
    assert lease["spec"]["holderIdentity"] == "pod-a"
    assert lease["spec"]["leaseTransitions"] == 4


def test_lease_race_lost_is_candidate():
    """Two replicas read the same expired lease; the second write conflicts
    and leaves that replica a candidate"""
    client = DryRunApiClient([make_lease("pod-old", now() - timedelta(seconds=60))])
    first = make_manager(client, identity="pod-a")
    second = make_manager(client, identity="pod-b")
    stale = current_lease(client)

    first.tick()
    assert first.is_leader()

    with mock.patch.object(client, "get", return_value=stale):
        second.tick()
    assert not second.is_leader()
    assert current_lease(client)["spec"]["holderIdentity"] == "pod-a"


def test_lease_create_conflict_is_candidate():
    client = DryRunApiClient()
    manager = make_manager(client)
    with mock.patch.object(client, "create", side_effect=ConflictError("exists")):
        manager.tick()
    assert manager.state == LeaderState.CANDIDATE


def test_lease_transient_error_keeps_state():
    client = DryRunApiClient()
    manager = make_manager(client)
    manager.run_tick()
    assert manager.is_leader()

    with mock.patch.object(client, "get", side_effect=ClusterError("timeout")):
        manager.run_tick()
    assert manager.is_leader()


def test_lease_transient_error_past_deadline_steps_down():
    client = DryRunApiClient()
    manager = make_manager(client)
    manager.run_tick()
    manager.last_renewal = time.monotonic() - manager.renew_deadline - 1
    with mock.patch.object(client, "get", side_effect=ClusterError("timeout")):
        manager.run_tick()
    assert not manager.is_leader()


def test_lease_listeners_notified():
    client = DryRunApiClient()
    manager = make_manager(client)
    states = []
    manager.add_listener(states.append)
    manager.tick()
    manager.tick()
    manager.become_candidate()
    assert states == [LeaderState.LEADER, LeaderState.CANDIDATE]


@pytest.mark.timeout(5)
def test_lease_thread_acquire_and_release():
    client = DryRunApiClient()
    with library_config(leader_election={"retry_period": "0.1s"}):
        manager = make_manager(client)
        manager.acquire()
        assert manager.wait_for_leadership(2)
        manager.release()
    assert not manager.is_leader()
    assert current_lease(client) is None


@pytest.mark.timeout(5)
def test_lease_release_keeps_lease_when_disabled():
    client = DryRunApiClient()
    with library_config(leader_election={"release_on_stop": False}):
        manager = make_manager(client)
        manager.tick()
        manager.release()
    assert not manager.is_leader()
    assert current_lease(client)["spec"]["holderIdentity"] == "pod-a"


def test_lease_release_other_holder_not_deleted():
    client = DryRunApiClient([make_lease("pod-b", now())])
    manager = make_manager(client)
    manager.acquire(force=True)
    manager.release()
    assert current_lease(client)["spec"]["holderIdentity"] == "pod-b"


def test_lease_force_acquire():
    manager = make_manager(DryRunApiClient())
    assert manager.acquire(force=True)
    assert manager.is_leader()


def test_lease_defaults_from_config():
    with library_config(operator_name="widgets", pod_name="pod-z"):
        manager = LeaseLeadershipManager(DryRunApiClient())
    assert manager.lease_name == "widgets-leadership"
    assert manager.identity == "pod-z"
    assert manager.namespace
