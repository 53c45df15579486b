"""
The Operator is the registry that wires controllers and finalizers to the
reconciliation engine and runs it
"""

# Standard
from dataclasses import dataclass
from functools import partial
from typing import Dict, Optional
import signal
import threading

# First Party
import alog

# Local
from . import config, metrics
from .cache import DiffCache
from .client import ApiClientBase, KubernetesApiClient
from .controller import EntityController
from .events import EventPublisher
from .exceptions import ConfigError, assert_config
from .finalizer import Finalizer, FinalizerCoordinator
from .leader_election import (
    LeaderState,
    LeadershipManagerBase,
    get_leader_election_class,
)
from .requeue import RequeueScheduler
from .snapshot import EntityType, ResourceSnapshot
from .threads import DedicatedTimerThread, DispatchThread, ResourceWatcher

log = alog.use_channel("OPRTR")


@dataclass
class _Registration:
    """Everything the engine runs for one entity type"""

    entity_type: EntityType
    controller: EntityController
    namespace: Optional[str] = None
    label_selector: Optional[str] = None
    cache: Optional[DiffCache] = None
    scheduler: Optional[RequeueScheduler] = None
    dispatcher: Optional[DispatchThread] = None
    watcher: Optional[ResourceWatcher] = None


class Operator:
    """Explicit registry of entity types, their controllers, and their
    finalizers. Registration happens before start; nothing is discovered at
    runtime.

    For each registered type the engine runs a ResourceWatcher feeding a
    DispatchThread through a bounded queue, with a DiffCache and a
    RequeueScheduler shared between them. Watchers only run while this
    process is the elected leader.
    """

    def __init__(
        self,
        client: Optional[ApiClientBase] = None,
        leadership_manager: Optional[LeadershipManagerBase] = None,
        name: Optional[str] = None,
    ):
        """
        Args:
            client:  Optional[ApiClientBase]
                Client for the control plane. Defaults to KubernetesApiClient
            leadership_manager:  Optional[LeadershipManagerBase]
                Leader election override. Defaults to the configured election
            name:  Optional[str]
                Name used in logs. Defaults to the operator_name config
        """
        if client is None:
            log.debug("Using KubernetesApiClient")
            client = KubernetesApiClient()
        self.client = client
        self.name = name or config.operator_name
        self.leadership_manager = leadership_manager
        self.finalizers = FinalizerCoordinator(self.client)
        self.events = EventPublisher(self.client, component=self.name)
        self.timer_thread: Optional[DedicatedTimerThread] = None

        self._registrations: Dict[EntityType, _Registration] = {}
        self._started = False
        self._stopping = threading.Event()
        self.shutdown = threading.Event()

    ## Registration ############################################################

    def add_controller(
        self,
        entity_type: EntityType,
        controller: EntityController,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> "Operator":
        """Register the controller for an entity type

        Args:
            entity_type:  EntityType
                The type to watch
            controller:  EntityController
                The controller whose hooks handle the type
            namespace:  Optional[str]
                Only watch this namespace
            label_selector:  Optional[str]
                Only watch objects matching this selector

        Returns:
            operator:  Operator
                self, so registrations can be chained
        """
        assert_config(not self._started, "Controllers must be added before start")
        assert_config(
            entity_type not in self._registrations,
            f"A controller is already registered for {entity_type}",
        )
        self._registrations[entity_type] = _Registration(
            entity_type=entity_type,
            controller=controller,
            namespace=namespace,
            label_selector=label_selector,
        )
        log.debug("Registered controller %s for %s", controller, entity_type)
        return self

    def add_finalizer(
        self, entity_type: EntityType, finalizer: Finalizer
    ) -> "Operator":
        """Register a finalizer for an entity type"""
        assert_config(not self._started, "Finalizers must be added before start")
        self.finalizers.register(entity_type, finalizer)
        return self

    ## Lifecycle ###############################################################

    def start(self):
        """Build the per type pipelines and join the leader election"""
        assert_config(self._registrations, "No controllers registered")
        if self._started:
            return
        self._started = True
        log.info("Starting Operator %s", self.name)

        if self.leadership_manager is None:
            self.leadership_manager = get_leader_election_class()(self.client)
        self.timer_thread = DedicatedTimerThread(name=f"{self.name}_timer")
        self.timer_thread.start_thread()

        for registration in self._registrations.values():
            self._build(registration)
            registration.dispatcher.start_thread()

        self._set_leader_gauge(False)
        self.leadership_manager.add_listener(self._on_leadership_change)
        if self.leadership_manager.acquire():
            # A manager that was already leader reports no transition
            self._on_leadership_change(LeaderState.LEADER)

    def stop(self):
        """Stop every watch, cancel every pending requeue, and wait for
        in flight callbacks to finish"""
        if self._stopping.is_set():
            return
        self._stopping.set()
        log.info("Stopping Operator %s", self.name)

        for registration in self._registrations.values():
            if registration.watcher:
                registration.watcher.stop()
            if registration.scheduler:
                registration.scheduler.cancel_all()
        if self.timer_thread:
            self.timer_thread.stop_thread()

        for registration in self._registrations.values():
            if registration.dispatcher:
                registration.dispatcher.stop_thread()
        for registration in self._registrations.values():
            if registration.dispatcher and registration.dispatcher.ident:
                registration.dispatcher.join()
            if registration.watcher:
                registration.watcher.join()

        if self.leadership_manager:
            self.leadership_manager.release()
        self._set_leader_gauge(False)
        self.shutdown.set()
        log.info("Operator %s stopped", self.name)

    def wait(self):
        """Wait for shutdown to be signaled"""
        self.shutdown.wait()

    def run(self):
        """Start the operator and block until SIGINT or SIGTERM"""

        def do_stop(*_, **__):  # pragma: no cover
            self.stop()

        signal.signal(signal.SIGINT, do_stop)
        signal.signal(signal.SIGTERM, do_stop)
        metrics.start_metrics_server()
        self.start()
        self.wait()

    ## Introspection ###########################################################

    def get_cache(self, entity_type: EntityType) -> DiffCache:
        return self._registration(entity_type).cache

    def get_scheduler(self, entity_type: EntityType) -> RequeueScheduler:
        return self._registration(entity_type).scheduler

    def get_watcher(self, entity_type: EntityType) -> ResourceWatcher:
        return self._registration(entity_type).watcher

    def get_dispatcher(self, entity_type: EntityType) -> DispatchThread:
        return self._registration(entity_type).dispatcher

    ## Implementation Details ##################################################

    def _registration(self, entity_type: EntityType) -> _Registration:
        registration = self._registrations.get(entity_type)
        if registration is None:
            raise ConfigError(f"No controller registered for {entity_type}")
        return registration

    def _build(self, registration: _Registration):
        entity_type = registration.entity_type
        registration.cache = DiffCache(name=entity_type.global_id)
        registration.dispatcher = DispatchThread(
            entity_type=entity_type,
            controller=registration.controller,
            cache=registration.cache,
            finalizers=self.finalizers,
            leadership_manager=self.leadership_manager,
        )
        registration.scheduler = RequeueScheduler(
            cache=registration.cache,
            dispatch=registration.dispatcher.push_request,
            timer_thread=self.timer_thread,
            name=entity_type.global_id,
        )
        registration.dispatcher.scheduler = registration.scheduler
        registration.watcher = ResourceWatcher(
            client=self.client,
            entity_type=entity_type,
            on_event=registration.dispatcher.push_event,
            namespace=registration.namespace,
            label_selector=registration.label_selector,
            scheduler=registration.scheduler,
            on_relist=registration.dispatcher.push_relist,
        )
        registration.controller.bind(
            requeue=registration.scheduler.schedule,
            attach_finalizer=partial(self._attach_finalizer, entity_type),
            publish_event=self.events.publish,
        )

    def _attach_finalizer(
        self,
        entity_type: EntityType,
        entity: ResourceSnapshot,
        finalizer_name: Optional[str] = None,
    ) -> ResourceSnapshot:
        if finalizer_name is None:
            return self.finalizers.register_all_finalizers(entity)
        finalizer = self.finalizers.get(entity_type, finalizer_name)
        if finalizer is None:
            raise ConfigError(
                f"No finalizer named {finalizer_name} registered for {entity_type}"
            )
        return self.finalizers.register_finalizer(entity, finalizer)

    def _on_leadership_change(self, state: LeaderState):
        """Run watches only while leader. Losing leadership drops all local
        state so the next term starts from a fresh list"""
        self._set_leader_gauge(state == LeaderState.LEADER)
        if state == LeaderState.LEADER:
            if self._stopping.is_set():
                return
            log.info("Became leader, starting watches")
            for registration in self._registrations.values():
                registration.watcher.start()
            return

        log.info("Lost leadership, stopping watches")
        for registration in self._registrations.values():
            registration.watcher.stop()
            registration.scheduler.cancel_all()
            registration.cache.clear()
            registration.dispatcher.reset()

    def _set_leader_gauge(self, leader: bool):
        metrics.leader.labels(operator=config.operator_name).set(1 if leader else 0)
