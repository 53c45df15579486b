"""
The DiffCache holds the last accepted snapshot of every watched object and
classifies each incoming snapshot against it
"""

# Standard
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple
import threading

# First Party
import alog

# Local
from .snapshot import ResourceSnapshot

log = alog.use_channel("CACHE")


class ComparisonResult(Enum):
    """The classification of an incoming snapshot"""

    NEW = "New"
    SPEC_MODIFIED = "SpecModified"
    STATUS_MODIFIED = "StatusModified"
    NOT_MODIFIED = "NotModified"
    FINALIZING = "Finalizing"


class DiffCache:
    """Cache of snapshots keyed by uid. Each entry is replaced, never merged,
    when an update is accepted. The internal lock only makes a single upsert
    atomic; ordering across events is the caller's responsibility.
    """

    def __init__(self, name: Optional[str] = None):
        self.name = name or "cache"
        self._entries: Dict[str, ResourceSnapshot] = {}
        self._lock = threading.Lock()

    ## Public Interface ########################################################

    def upsert(
        self, snapshot: ResourceSnapshot
    ) -> Tuple[ResourceSnapshot, ComparisonResult]:
        """Classify the snapshot against the cached entry and store it

        Args:
            snapshot:  ResourceSnapshot
                The incoming snapshot

        Returns:
            stored:  ResourceSnapshot
                The snapshot now held in the cache. Re-upserting the same
                revision leaves the existing entry in place and returns it
            result:  ComparisonResult
                The classification of the incoming snapshot
        """
        with self._lock:
            existing = self._entries.get(snapshot.uid)
            result = self._compare(existing, snapshot)
            # An unchanged payload at a new revision still refreshes the entry
            # so later writes carry the current resourceVersion
            if (
                result == ComparisonResult.NOT_MODIFIED
                and existing.resource_version == snapshot.resource_version
            ):
                stored = existing
            else:
                self._entries[snapshot.uid] = snapshot
                stored = snapshot

        if snapshot.deletion_timestamp:
            log.debug2(
                "[%s] %s classified as %s, overriding to %s",
                self.name,
                snapshot,
                result.value,
                ComparisonResult.FINALIZING.value,
            )
            result = ComparisonResult.FINALIZING
        else:
            log.debug3("[%s] %s classified as %s", self.name, snapshot, result.value)
        return stored, result

    def get(self, uid: str) -> Optional[ResourceSnapshot]:
        """Get the cached snapshot for a uid if one exists"""
        with self._lock:
            return self._entries.get(uid)

    def remove(self, uid: str) -> Optional[ResourceSnapshot]:
        """Evict the entry for a uid and return it if it existed"""
        with self._lock:
            removed = self._entries.pop(uid, None)
        if removed:
            log.debug2("[%s] Removed %s", self.name, removed)
        return removed

    def clear(self):
        """Drop every entry"""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        log.debug("[%s] Cleared %d entries", self.name, count)

    def snapshots(self) -> List[ResourceSnapshot]:
        """Get every cached snapshot"""
        with self._lock:
            return list(self._entries.values())

    def fill(self, snapshots: Iterable[ResourceSnapshot]):
        """Preload entries without classifying them. Later upserts of the same
        revisions will classify as NOT_MODIFIED
        """
        with self._lock:
            for snapshot in snapshots:
                self._entries[snapshot.uid] = snapshot
            count = len(self._entries)
        log.debug("[%s] Filled cache, now holding %d entries", self.name, count)

    ## Dunder Functions ########################################################

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, uid: str) -> bool:
        with self._lock:
            return uid in self._entries

    ## Implementation Details ##################################################

    @staticmethod
    def _compare(
        existing: Optional[ResourceSnapshot], incoming: ResourceSnapshot
    ) -> ComparisonResult:
        if existing is None:
            return ComparisonResult.NEW
        if (
            existing.resource_version != incoming.resource_version
            and existing.spec_hash != incoming.spec_hash
        ):
            return ComparisonResult.SPEC_MODIFIED
        if existing.status_hash != incoming.status_hash:
            return ComparisonResult.STATUS_MODIFIED
        return ComparisonResult.NOT_MODIFIED
