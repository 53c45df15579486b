"""
The TimerThread is a helper class used to run scheduled events
"""

# Standard
from datetime import datetime, timedelta
from heapq import heappop, heappush
from typing import Any, Callable, Dict, List, Optional, Union
import threading

# First Party
import alog

# Local
from ..constants import MIN_SLEEP_TIME
from ..utils import Singleton, TimerEvent, to_seconds
from .base import ThreadBase

log = alog.use_channel("TMRTHRD")


class TimerThread(ThreadBase, metaclass=Singleton):
    """The TimerThread class is a helper class to run scheduled actions. This is
    very similar to threading.Timer stdlib class except that it uses one shared
    thread for all events instead of a thread per event."""

    def __init__(self, name: Optional[str] = None):
        """Initialize a priorityqueue like object and a synchronization object"""
        super().__init__(name=name or "timer_thread", daemon=True)

        # Use a heap queue instead of a queue.PriorityQueue as we're already handling
        # synchronization with the notify condition
        self.timer_heap: List[TimerEvent] = []
        self.notify_condition = threading.Condition()

    def run(self):
        """The TimerThread's control loop sleeps until the next schedule
        event and executes all pending actions."""
        while True:
            with self.notify_condition:
                if self.should_stop():
                    return
                time_to_sleep = self._get_time_to_sleep()
                if time_to_sleep:
                    log.debug3(
                        "Timer waiting %ss until next scheduled event", time_to_sleep
                    )
                else:
                    log.debug3("Timer waiting until event queued")
                self.notify_condition.wait(timeout=time_to_sleep)

            if self.should_stop():
                return

            for event in self._get_all_current_events():
                log.debug2("Timer executing action for event: %s", event)
                try:
                    event.action(*event.args, **event.kwargs)
                except Exception:  # pylint: disable=broad-exception-caught
                    log.error("Timer action %s failed", event.action, exc_info=True)

    ## Class Interface #########################################################

    def stop_thread(self):
        """Override stop_thread to wake the control loop and drop every
        pending event"""
        super().stop_thread()
        with self.notify_condition:
            for event in self.timer_heap:
                event.cancel()
            self.timer_heap.clear()
            log.debug("Notifying TimerThread of shutdown")
            self.notify_condition.notify_all()

    ## Public Interface ########################################################

    def put_event(
        self, time: datetime, action: Callable, *args: Any, **kwargs: Dict
    ) -> Optional[TimerEvent]:
        """Push an event to the timer

        Args:
            time: datetime
                The datetime to execute the event at
            action: Callable
                The action to execute
            *args: Any
                Args to pass to the action
            **kwargs: Dict
                Kwargs to pass to the action

        Returns:
            event: Optional[TimerEvent]
                TimerEvent describing the event and can be cancelled
        """
        # Don't allow pushing to a stopped thread
        if self.should_stop():
            return None

        event = TimerEvent(time=time, action=action, args=args, kwargs=kwargs)
        with self.notify_condition:
            heappush(self.timer_heap, event)
            self.notify_condition.notify_all()
        return event

    def put_delayed(
        self,
        delay: Union[float, timedelta],
        action: Callable,
        *args: Any,
        **kwargs: Dict,
    ) -> Optional[TimerEvent]:
        """Push an event to run after a delay given in seconds or as a timedelta"""
        run_at = datetime.now() + timedelta(seconds=to_seconds(delay))
        return self.put_event(run_at, action, *args, **kwargs)

    ## Time Functions ##########################################################

    def _get_time_to_sleep(self) -> Optional[float]:
        """Calculate the time to sleep based on the current queue

        Returns:
            time_to_wait: Optional[float]
               The time to wait if there's an object in the queue"""
        with self.notify_condition:
            obj = self._peek_next_event()
            if obj:
                time_to_sleep = (obj.time - datetime.now()).total_seconds()
                if time_to_sleep < MIN_SLEEP_TIME:
                    return MIN_SLEEP_TIME
                return time_to_sleep
            return None

    ## Queue Functions #########################################################

    def _get_all_current_events(self) -> List[TimerEvent]:
        """Pop every event whose time has passed, skipping cancelled ones"""
        event_list = []
        with self.notify_condition:
            while self.timer_heap:
                if self.timer_heap[0].time > datetime.now():
                    break
                obj = heappop(self.timer_heap)
                if obj.stale:
                    log.debug3("Skipping timer event %s", obj)
                    continue
                event_list.append(obj)
        return event_list

    def _peek_next_event(self) -> Optional[TimerEvent]:
        """Get the next timer event without removing it from the queue"""
        with self.notify_condition:
            if self.timer_heap:
                return self.timer_heap[0]
            return None


class DedicatedTimerThread(TimerThread):
    """A TimerThread owned by a single Operator. Each construction returns a
    new instance, so stopping one Operator never stops the timer of another"""

    _disable_singleton = True
