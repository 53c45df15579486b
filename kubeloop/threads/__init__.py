"""
Background threads run by the engine
"""

# Local
from .base import ThreadBase
from .timer import DedicatedTimerThread, TimerThread
from .watch import ResourceWatcher
from .dispatch import DispatchThread
