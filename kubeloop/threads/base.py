"""
Module for the ThreadBase Class
"""

# Standard
from typing import Optional
import threading

# First Party
import alog

# Local
from ..leader_election import DryRunLeadershipManager, LeadershipManagerBase

log = alog.use_channel("TRDUTLS")


class ThreadBase(threading.Thread):
    """Base class for all other thread classes. This class handles generic
    starting, stopping, and leadership functions"""

    def __init__(
        self,
        name: Optional[str] = None,
        daemon: Optional[bool] = None,
        leadership_manager: Optional[LeadershipManagerBase] = None,
    ):
        """Initialize class and store required instance variables. This function
        is normally overriden by subclasses that pass in static name/daemon variables

        Args:
            name: Optional[str]
                The name of the thread to manager
            daemon: Optional[bool]
                Whether python should wait for this thread to stop before exiting
            leadership_manager: Optional[LeadershipManagerBase]
                The leadership_manager for tracking elections. Without one the
                thread always acts as leader
        """
        self.leadership_manager = leadership_manager
        if self.leadership_manager is None:
            self.leadership_manager = DryRunLeadershipManager()
            self.leadership_manager.acquire()
        self.shutdown = threading.Event()
        super().__init__(name=name, daemon=daemon)

    ## Abstract Interface ######################################################

    def run(self):
        """Control loop for the thread. Once this function exits the thread stops"""
        raise NotImplementedError()

    ## Base Class Interface ####################################################

    def start_thread(self):
        """If the thread is not already alive start it"""
        if not self.is_alive() and not self.ident:
            log.info("Starting %s: %s", self.__class__.__name__, self.name)
            self.start()

    def stop_thread(self):
        """Set the shutdown event"""
        log.info("Stopping %s: %s", self.__class__.__name__, self.name)
        self.shutdown.set()

    def should_stop(self) -> bool:
        """Helper to determine if a thread should shutdown"""
        return self.shutdown.is_set()

    def is_leader(self) -> bool:
        """Helper to determine if this process may act on events"""
        return self.leadership_manager.is_leader()
