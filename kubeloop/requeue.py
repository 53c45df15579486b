"""
The RequeueScheduler lets reconcile code ask for an object to be reconsidered
after a delay
"""

# Standard
from datetime import timedelta
from typing import Callable, Dict, Optional, Union
import threading

# First Party
import alog

# Local
from .cache import DiffCache
from .snapshot import ResourceSnapshot
from .threads.timer import TimerThread
from .utils import ReconcileRequest, ReconcileRequestType, TimerEvent, to_seconds

log = alog.use_channel("RQUEUE")


class RequeueScheduler:
    """Per-uid delayed reconsideration with cancel-on-supersede semantics.

    At most one timer is live per uid: scheduling again cancels the previous
    timer outright. Every live watch event for a uid cancels its timer and
    bumps the uid's epoch. A requeue that already fired and is waiting in the
    dispatch queue carries the old epoch, so the dispatcher can tell it has
    been superseded.
    """

    def __init__(
        self,
        cache: DiffCache,
        dispatch: Callable[[ReconcileRequest], None],
        timer_thread: Optional[TimerThread] = None,
        name: Optional[str] = None,
    ):
        """
        Args:
            cache:  DiffCache
                The cache fired requeues read the current snapshot from
            dispatch:  Callable[[ReconcileRequest], None]
                Pushes a request onto the same path live events take
            timer_thread:  Optional[TimerThread]
                The timer used to run delayed actions
            name:  Optional[str]
                Name used in log messages
        """
        self.cache = cache
        self.dispatch = dispatch
        self.timer_thread = timer_thread or TimerThread()
        self.name = name or "requeue"
        self._timers: Dict[str, TimerEvent] = {}
        self._epochs: Dict[str, int] = {}
        self._lock = threading.Lock()

    ## Public Interface ########################################################

    def schedule(
        self,
        snapshot: ResourceSnapshot,
        delay: Union[float, timedelta],
        attempt: int = 0,
    ):
        """Reconsider the object after delay, replacing any pending timer

        Args:
            snapshot:  ResourceSnapshot
                The object to reconsider
            delay:  Union[float, timedelta]
                Seconds, or a timedelta, to wait
            attempt:  int
                Number of failed attempts that led to this requeue
        """
        seconds = to_seconds(delay)
        uid = snapshot.uid
        with self._lock:
            previous = self._timers.pop(uid, None)
            if previous:
                log.debug2("[%s] Replacing pending requeue of %s", self.name, snapshot)
                previous.cancel()
            epoch = self._epochs.get(uid, 0)
            event = self.timer_thread.put_delayed(
                seconds, self._fire, uid, epoch, attempt
            )
            if event is None:
                log.warning(
                    "[%s] Timer stopped, dropping requeue of %s", self.name, snapshot
                )
                return
            self._timers[uid] = event
        log.debug("[%s] Requeue of %s scheduled in %ss", self.name, snapshot, seconds)

    def cancel_if_scheduled(self, uid: str) -> bool:
        """Cancel a pending timer for uid and supersede any fired requeue that
        hasn't been processed yet

        Returns:
            cancelled:  bool
                True if a pending timer was cancelled
        """
        with self._lock:
            self._epochs[uid] = self._epochs.get(uid, 0) + 1
            event = self._timers.pop(uid, None)
        if event:
            log.debug2("[%s] Cancelled pending requeue for %s", self.name, uid)
            event.cancel()
            return True
        return False

    def cancel_all(self):
        """Cancel every pending timer"""
        with self._lock:
            events = list(self._timers.values())
            self._timers.clear()
            for uid in self._epochs:
                self._epochs[uid] += 1
        for event in events:
            event.cancel()
        log.debug("[%s] Cancelled %d pending requeues", self.name, len(events))

    def forget(self, uid: str):
        """Drop all tracking for a uid once the object is gone"""
        with self._lock:
            event = self._timers.pop(uid, None)
            self._epochs.pop(uid, None)
        if event:
            event.cancel()

    def pending(self, uid: str) -> bool:
        """Whether a timer is currently scheduled for uid"""
        with self._lock:
            return uid in self._timers

    def is_current(self, uid: str, epoch: Optional[int]) -> bool:
        """Whether a requeue scheduled at epoch is still the latest word on
        uid"""
        with self._lock:
            return self._epochs.get(uid, 0) == epoch

    ## Implementation Details ##################################################

    def _fire(self, uid: str, epoch: int, attempt: int):
        with self._lock:
            if self._epochs.get(uid, 0) != epoch:
                log.debug2("[%s] Requeue of %s superseded", self.name, uid)
                return
            self._timers.pop(uid, None)

        snapshot = self.cache.get(uid)
        if snapshot is None:
            log.debug("[%s] %s no longer cached, dropping requeue", self.name, uid)
            return

        log.debug2("[%s] Requeue of %s fired", self.name, snapshot)
        self.dispatch(
            ReconcileRequest(
                type=ReconcileRequestType.REQUEUED,
                resource=snapshot,
                epoch=epoch,
                attempt=attempt,
            )
        )
