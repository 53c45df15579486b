"""
Finalizers and the FinalizerCoordinator that attaches and runs them
"""

# Standard
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional
import abc
import threading

# First Party
import alog

# Local
from . import config, constants
from .client import ApiClientBase
from .exceptions import ConflictError, FinalizerError, assert_config
from .snapshot import EntityType, ResourceSnapshot

log = alog.use_channel("FNLZR")


def finalizer_identifier(group: str, name: str) -> str:
    """Derive the identifier persisted in metadata.finalizers

    The name gets a "finalizer" suffix unless it already ends with one, is
    prefixed with the group, and the result is cut to the control plane's
    63 character limit.

    Args:
        group:  str
            The api group of the entity type. May be empty for the core group
        name:  str
            The finalizer's name

    Returns:
        identifier:  str
            The deterministic identifier
    """
    name = name.lower()
    if not name.endswith(constants.FINALIZER_NAME_SUFFIX):
        name = f"{name}{constants.FINALIZER_NAME_SUFFIX}"
    identifier = f"{group}/{name}".lstrip("/")
    return identifier[: constants.FINALIZER_IDENTIFIER_MAX_LENGTH]


class Finalizer(abc.ABC):
    """A named cleanup obligation that must complete before an entity is
    removed. Subclasses implement finalize and may set name; it defaults to
    the lower cased class name.
    """

    name: Optional[str] = None

    @abc.abstractmethod
    def finalize(self, entity: ResourceSnapshot):
        """Clean up whatever the entity owns. Raising keeps the identifier on
        the entity so the cleanup is retried"""

    def get_name(self) -> str:
        return self.name or self.__class__.__name__.lower()

    def identifier_for(self, entity_type: EntityType) -> str:
        """The identifier this finalizer uses on entities of a type"""
        return finalizer_identifier(entity_type.group, self.get_name())


class FinalizerCoordinator:
    """Tracks which finalizers are registered for each entity type, attaches
    their identifiers to entities, and runs the pending ones when deletion is
    requested.
    """

    def __init__(self, client: ApiClientBase, max_workers: Optional[int] = None):
        """
        Args:
            client:  ApiClientBase
                Client used to persist finalizer list changes
            max_workers:  Optional[int]
                Cap on concurrently running cleanups for one entity
        """
        self.client = client
        self.max_workers = max_workers or config.dispatch.finalizer_workers
        self._registered: Dict[EntityType, Dict[str, Finalizer]] = {}

    ## Registration ############################################################

    def register(self, entity_type: EntityType, finalizer: Finalizer) -> str:
        """Register a finalizer for an entity type and return its identifier"""
        identifier = finalizer.identifier_for(entity_type)
        registered = self._registered.setdefault(entity_type, {})
        assert_config(
            identifier not in registered,
            f"Finalizer identifier {identifier} already registered for {entity_type}",
        )
        registered[identifier] = finalizer
        log.debug("Registered finalizer %s for %s", identifier, entity_type)
        return identifier

    def registered(self, entity_type: EntityType) -> Dict[str, Finalizer]:
        """Map of identifier to finalizer for an entity type"""
        return dict(self._registered.get(entity_type, {}))

    def get(self, entity_type: EntityType, name: str) -> Optional[Finalizer]:
        """Look up a registered finalizer by name"""
        for finalizer in self._registered.get(entity_type, {}).values():
            if finalizer.get_name() == name:
                return finalizer
        return None

    ## Attaching ###############################################################

    def register_finalizer(
        self, entity: ResourceSnapshot, finalizer: Finalizer
    ) -> ResourceSnapshot:
        """Add one finalizer's identifier to the entity and persist it. Does
        nothing if the identifier is already present

        Returns:
            entity:  ResourceSnapshot
                The persisted entity
        """
        return self._attach(entity, [finalizer.identifier_for(entity.entity_type)])

    def register_all_finalizers(self, entity: ResourceSnapshot) -> ResourceSnapshot:
        """Add the identifier of every finalizer registered for the entity's
        type and persist once"""
        return self._attach(entity, list(self.registered(entity.entity_type)))

    ## Finalizing ##############################################################

    def pending(self, entity: ResourceSnapshot) -> List[str]:
        """The entity's persisted identifiers that belong to registered
        finalizers, in persisted order"""
        registered = self._registered.get(entity.entity_type, {})
        return [
            identifier for identifier in entity.finalizers if identifier in registered
        ]

    def finalize(self, entity: ResourceSnapshot) -> ResourceSnapshot:
        """Run every pending finalizer concurrently, then persist the entity
        once with the completed identifiers removed

        Returns:
            entity:  ResourceSnapshot
                The persisted entity, or the given one if nothing completed

        Raises:
            FinalizerError: If any cleanup raised. Its identifier is retained
        """
        registered = self.registered(entity.entity_type)
        pending = self.pending(entity)
        if not pending:
            return entity

        remaining = list(entity.finalizers)
        completed = []
        remaining_lock = threading.Lock()

        def run_finalizer(identifier: str):
            log.debug2("Running finalizer %s for %s", identifier, entity)
            registered[identifier].finalize(entity)
            with remaining_lock:
                remaining.remove(identifier)
                completed.append(identifier)

        failed = []
        with ThreadPoolExecutor(
            max_workers=min(len(pending), self.max_workers),
            thread_name_prefix="finalizer",
        ) as pool:
            futures = {
                pool.submit(run_finalizer, identifier): identifier
                for identifier in pending
            }
            for future in as_completed(futures):
                identifier = futures[future]
                try:
                    future.result()
                except Exception:  # pylint: disable=broad-exception-caught
                    log.error(
                        "Finalizer %s failed for %s", identifier, entity, exc_info=True
                    )
                    failed.append(identifier)

        persisted = entity
        if completed:
            persisted = self._persist(
                entity.with_finalizers(remaining),
                lambda finalizers: [fin for fin in finalizers if fin not in completed],
            )
            log.info("Removed finalizers %s from %s", completed, persisted)

        if failed:
            raise FinalizerError(
                f"Finalizers {failed} failed for {entity}", failed=sorted(failed)
            )
        return persisted

    ## Implementation Details ##################################################

    def _attach(
        self, entity: ResourceSnapshot, identifiers: List[str]
    ) -> ResourceSnapshot:
        missing = [ident for ident in identifiers if ident not in entity.finalizers]
        if not missing:
            log.debug3("Finalizers %s already present on %s", identifiers, entity)
            return entity

        def add_missing(finalizers: List[str]) -> List[str]:
            return finalizers + [ident for ident in missing if ident not in finalizers]

        persisted = self._persist(
            entity.with_finalizers(add_missing(list(entity.finalizers))), add_missing
        )
        log.info("Attached finalizers %s to %s", missing, persisted)
        return persisted

    def _persist(self, entity: ResourceSnapshot, apply_change) -> ResourceSnapshot:
        """Write the entity. On a conflict the latest revision is fetched, the
        same change is applied to its finalizer list, and the write is retried
        once"""
        try:
            return ResourceSnapshot(self.client.update(entity.definition))
        except ConflictError:
            log.debug("Conflict persisting %s, retrying on latest revision", entity)

        latest = self.client.get(entity.entity_type, entity.name, entity.namespace)
        if latest is None:
            log.debug("%s no longer exists, nothing to persist", entity)
            return entity
        latest = ResourceSnapshot(latest)
        updated = latest.with_finalizers(apply_change(list(latest.finalizers)))
        return ResourceSnapshot(self.client.update(updated.definition))
