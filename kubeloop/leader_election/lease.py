"""Implementation of the lease based LeaderElection"""
# Standard
from datetime import datetime, timedelta, timezone
from typing import Optional

# Third Party
from dateutil.parser import parse

# First Party
import alog

# Local
from .. import config, constants
from ..client import ApiClientBase
from ..exceptions import ConflictError, assert_config
from ..snapshot import EntityType
from ..utils import config_seconds, get_operator_namespace, get_pod_name
from .base import ThreadedLeaderManagerBase

log = alog.use_channel("LDRLEASE")

LEASE_TYPE = EntityType.from_api_version(
    constants.LEASE_API_VERSION, constants.LEASE_KIND
)


class LeaseLeadershipManager(ThreadedLeaderManagerBase):
    """
    LeaseLeadershipManager keeps a single coordination.k8s.io Lease per
    operator. The holder renews it every tick and any other replica takes it
    over once renewTime plus leaseDurationSeconds has passed. Every write is
    conditional on the lease's resourceVersion, so losing a race surfaces as a
    conflict and simply leaves this process a candidate.
    """

    def __init__(
        self,
        client: ApiClientBase,
        lease_name: Optional[str] = None,
        namespace: Optional[str] = None,
        identity: Optional[str] = None,
    ):
        """
        Args:
            client:  ApiClientBase
                Client used to read and write the lease
            lease_name:  Optional[str]
                Name of the lease. Defaults to {operator_name}-leadership
            namespace:  Optional[str]
                Namespace of the lease. Defaults to the operator namespace
            identity:  Optional[str]
                Holder identity of this process. Defaults to the pod name
        """
        super().__init__(client)
        self.lease_name = lease_name or (
            f"{config.operator_name}{constants.LEASE_NAME_SUFFIX}"
        )
        self.namespace = namespace or get_operator_namespace()
        self.identity = identity or get_pod_name()
        self.lease_duration = round(config_seconds("leader_election.lease_duration"))
        assert_config(self.lease_name, "Unable to detect lease name")
        assert_config(self.namespace, "Unable to detect operator namespace")
        assert_config(self.identity, "Unable to detect lease identity")

    ## Election ################################################################

    def tick(self):
        """Get the lease and then create, renew, or take it over"""
        now = datetime.now(timezone.utc)
        current = self.client.get(LEASE_TYPE, self.lease_name, self.namespace)

        if current is None:
            log.debug(
                "Lease %s/%s not found, creating", self.namespace, self.lease_name
            )
            self._write(self._lease_definition(now, transitions=0), create=True)
            return

        lease_spec = current.get("spec") or {}
        resource_version = current.get("metadata", {}).get("resourceVersion")
        holder = lease_spec.get("holderIdentity")

        if holder == self.identity:
            log.debug2("Renewing lease %s", self.lease_name)
            renewed = self._lease_definition(
                now,
                transitions=lease_spec.get("leaseTransitions", 0),
                acquire_time=lease_spec.get("acquireTime"),
                resource_version=resource_version,
            )
            self._write(renewed)
            return

        if not self._expired(lease_spec, now):
            log.debug2("Lease %s held by %s", self.lease_name, holder)
            self.become_candidate()
            return

        log.info("Lease held by %s expired, taking leadership", holder)
        claimed = self._lease_definition(
            now,
            transitions=lease_spec.get("leaseTransitions", 0) + 1,
            resource_version=resource_version,
        )
        self._write(claimed)

    def release(self):
        """Stop the election thread and delete the lease if this process holds
        it, so another replica doesn't have to wait for it to expire
        """
        was_leader = self.is_leader()
        self.shutdown.set()
        if self.leadership_thread.ident:
            self.leadership_thread.join()

        if was_leader and config.leader_election.release_on_stop:
            try:
                current = self.client.get(LEASE_TYPE, self.lease_name, self.namespace)
                if (current or {}).get("spec", {}).get("holderIdentity") == (
                    self.identity
                ):
                    log.info("Deleting lease %s", self.lease_name)
                    self.client.delete(LEASE_TYPE, self.lease_name, self.namespace)
            except Exception:  # pylint: disable=broad-exception-caught
                log.warning("Unable to delete lease %s", self.lease_name, exc_info=True)

        self.become_candidate()

    ## Implementation Details ##################################################

    def _write(self, lease: dict, create: bool = False):
        """Write the lease as self, becoming leader on success and candidate if
        another process won the race
        """
        try:
            if create:
                self.client.create(lease)
            else:
                self.client.update(lease)
        except ConflictError:
            log.debug("Lost the race for lease %s", self.lease_name)
            self.become_candidate()
            return
        self.become_leader()

    def _expired(self, lease_spec: dict, now: datetime) -> bool:
        renew_time = lease_spec.get("renewTime")
        if not renew_time:
            return True
        duration = timedelta(
            seconds=lease_spec.get("leaseDurationSeconds") or self.lease_duration
        )
        renewed_at = parse(renew_time)
        if renewed_at.tzinfo is None:
            renewed_at = renewed_at.replace(tzinfo=timezone.utc)
        return renewed_at + duration < now

    def _lease_definition(
        self,
        now: datetime,
        transitions: int,
        acquire_time: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> dict:
        timestamp = now.strftime(constants.LEASE_TIME_FORMAT)
        lease = {
            "kind": constants.LEASE_KIND,
            "apiVersion": constants.LEASE_API_VERSION,
            "metadata": {
                "name": self.lease_name,
                "namespace": self.namespace,
            },
            "spec": {
                "holderIdentity": self.identity,
                "acquireTime": acquire_time or timestamp,
                "renewTime": timestamp,
                "leaseDurationSeconds": self.lease_duration,
                "leaseTransitions": transitions,
            },
        }
        if resource_version:
            lease["metadata"]["resourceVersion"] = resource_version
        return lease
