"""Implementation of the DryRun LeaderElection"""

# Local
from .base import LeaderState, LeadershipManagerBase


class DryRunLeadershipManager(LeadershipManagerBase):
    """DryRunLeaderElection class implements an empty leadership
    election manager which always acts as a leader. This is used when
    leader election is disabled so every replica acts as the sole leader"""

    def acquire(self, force: bool = False) -> bool:
        """Become leader immediately"""
        self._set_state(LeaderState.LEADER)
        return True

    def release(self):
        """Give up the leadership that was assumed on acquire"""
        self._set_state(LeaderState.CANDIDATE)
