"""
Leader election implementations
"""

# Standard
from typing import Type

# Local
from .. import config
from .base import (
    LeaderState,
    LeadershipListener,
    LeadershipManagerBase,
    ThreadedLeaderManagerBase,
)
from .dry_run import DryRunLeadershipManager
from .lease import LeaseLeadershipManager


def get_leader_election_class() -> Type[LeadershipManagerBase]:
    """Get the current configured leadership election"""
    if config.leader_election.enabled:
        return LeaseLeadershipManager
    return DryRunLeadershipManager
