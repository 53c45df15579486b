"""Base classes for leader election implementations"""

# Standard
from enum import Enum
from typing import Callable, List, Optional
import abc
import threading
import time

# First Party
import alog

# Local
from ..client import ApiClientBase
from ..utils import config_seconds

log = alog.use_channel("LDRELC")


class LeaderState(Enum):
    """The two states of an elector"""

    CANDIDATE = "Candidate"
    LEADER = "Leader"


LeadershipListener = Callable[[LeaderState], None]


class LeadershipManagerBase(abc.ABC):
    """
    Base class for leader election. A manager tracks whether this process is
    allowed to act on watch events and notifies registered listeners whenever
    that changes.
    """

    def __init__(self, client: Optional[ApiClientBase] = None):
        """
        Args:
            client:  Optional[ApiClientBase]
                Client used to read and write the lease
        """
        self.client = client
        self._state = LeaderState.CANDIDATE
        self._state_lock = threading.Lock()
        self._leader_event = threading.Event()
        self._listeners: List[LeadershipListener] = []

    ## Lock Interface ##########################################################

    @abc.abstractmethod
    def acquire(self, force: bool = False) -> bool:
        """Start taking part in the election

        Args:
            force:  bool
                Become leader immediately regardless of the lease. Used by
                tests and single replica deployments

        Returns:
            leader:  bool
                True if this process is currently the leader
        """

    @abc.abstractmethod
    def release(self):
        """Stop taking part in the election and give up leadership"""

    ## Public Interface ########################################################

    @property
    def state(self) -> LeaderState:
        with self._state_lock:
            return self._state

    def is_leader(self) -> bool:
        """Return if this process is the current leader"""
        return self.state == LeaderState.LEADER

    def wait_for_leadership(self, timeout: Optional[float] = None) -> bool:
        """Block until this process is leader or the timeout expires"""
        return self._leader_event.wait(timeout)

    def add_listener(self, listener: LeadershipListener):
        """Register a callable invoked with the new state on every transition"""
        self._listeners.append(listener)

    ## Implementation Details ##################################################

    def _set_state(self, new_state: LeaderState):
        """Record a state and notify listeners if it changed. Listeners run
        outside the state lock so they may query is_leader
        """
        with self._state_lock:
            old_state = self._state
            self._state = new_state
            if new_state == LeaderState.LEADER:
                self._leader_event.set()
            else:
                self._leader_event.clear()

        if old_state == new_state:
            return

        log.info("Leadership changed from %s to %s", old_state.value, new_state.value)
        for listener in self._listeners:
            try:
                listener(new_state)
            except Exception:  # pylint: disable=broad-exception-caught
                log.error("Leadership listener %s failed", listener, exc_info=True)


class ThreadedLeaderManagerBase(LeadershipManagerBase):
    """
    Base class for threaded leadership election. Child classes only need to
    implement tick, and it will automatically be looped on the retry period
    until release is called
    """

    def __init__(self, client: ApiClientBase):
        super().__init__(client)
        self.shutdown = threading.Event()

        # Lock to ensure multiple ticks aren't running at the same time
        self.run_lock = threading.Lock()

        self.leadership_thread = threading.Thread(
            name="leadership_thread", target=self.run, daemon=True
        )
        self.poll_time = config_seconds("leader_election.retry_period")
        self.renew_deadline = config_seconds("leader_election.renew_deadline")
        self.last_renewal: Optional[float] = None

    ## Abstract Interface ######################################################

    @abc.abstractmethod
    def tick(self):
        """Run one round of the election. Implementations call
        become_leader or become_candidate based on the outcome and let any
        ambiguous error propagate
        """

    ## Helpers for Child Classes ###############################################

    def become_leader(self):
        """Record a confirmed, current lease held by this process"""
        self.last_renewal = time.monotonic()
        self._set_state(LeaderState.LEADER)

    def become_candidate(self):
        """Record that another process holds, or just won, the lease"""
        self._set_state(LeaderState.CANDIDATE)

    ## Lock Interface ##########################################################

    def acquire(self, force: bool = False) -> bool:
        """Start the leadership thread if it isn't already running"""
        if force:
            self.become_leader()
            return True

        if not self.leadership_thread.is_alive():
            # Recreate leadership thread if its already exited
            if self.leadership_thread.ident:
                self.shutdown.clear()
                self.leadership_thread = threading.Thread(
                    name="leadership_thread", target=self.run, daemon=True
                )
            log.info(
                "Starting %s: %s", self.__class__.__name__, self.leadership_thread.name
            )
            self.leadership_thread.start()
        return self.is_leader()

    def release(self):
        """Shut down the background thread before clearing leadership"""
        self.shutdown.set()
        if self.leadership_thread.ident:
            self.leadership_thread.join()
        self.become_candidate()

    ## Implementation Details ##################################################

    def run(self):
        """Loop to continuously run the election every poll period"""
        while True:
            if self.shutdown.is_set():
                log.debug("Shutting down %s Thread", self.__class__.__name__)
                return

            self.run_tick()
            self.shutdown.wait(self.poll_time)

    def run_tick(self):
        """Run tick safely. An error leaves the state as it was unless this
        process is leader and hasn't renewed within the renew deadline
        """
        log.debug2("Running election tick for %s", self.__class__.__name__)
        with self.run_lock:
            try:
                self.tick()
            except Exception:  # pylint: disable=broad-exception-caught
                log.error(
                    "Error detected during leader election, keeping state %s",
                    self.state.value,
                    exc_info=True,
                )
                if (
                    self.is_leader()
                    and self.last_renewal is not None
                    and time.monotonic() - self.last_renewal > self.renew_deadline
                ):
                    log.warning(
                        "Unable to renew leadership within %ss, stepping down",
                        self.renew_deadline,
                    )
                    self.become_candidate()
