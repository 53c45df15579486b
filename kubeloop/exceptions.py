"""
This module implements custom exceptions
"""

# Standard
from typing import List, Optional

## Base Error ##################################################################


class KubeloopError(Exception):
    """Base class for all kubeloop exceptions"""

    def __init__(self, message: str, is_fatal_error: bool):
        """Construct with a flag indicating whether this is a fatal error. This
        will be a static property of all children.
        """
        super().__init__(message)
        self._is_fatal_error = is_fatal_error

    @property
    def is_fatal_error(self):
        """Property indicating whether or not this error should stop the
        component that observed it rather than being retried
        """
        return self._is_fatal_error


## Fatal Errors ################################################################


class KubeloopFatalError(KubeloopError):
    """A KubeloopFatalError is one that indicates an unexpected, and likely
    unrecoverable, failure that retrying will not fix.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=True)


class ConfigError(KubeloopFatalError):
    """Exception caused during usage of user-provided configuration"""


class ClusterError(KubeloopFatalError):
    """Exception caused when a cluster operation fails in an unexpected way"""


class WatchDeserializationError(KubeloopFatalError):
    """Exception raised when a watch stream delivers a payload that can't be
    decoded. Reconnecting would reproduce the same response, so the
    subscription is abandoned.
    """


## Expected Errors #############################################################


class KubeloopExpectedError(KubeloopError):
    """A KubeloopExpectedError is one that indicates an expected failure
    condition that is expected to resolve on a later attempt.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=False)


class ConflictError(KubeloopExpectedError):
    """Exception raised when a conditional write loses an optimistic
    concurrency race (the resourceVersion was stale)
    """


class FinalizerError(KubeloopExpectedError):
    """Exception raised when one or more finalizer cleanups failed. The failed
    identifiers are retained on the entity.
    """

    def __init__(self, message: str = "", failed: Optional[List[str]] = None):
        self.failed = failed or []
        super().__init__(message)


## Assertions ##################################################################


def assert_config(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ConfigError. This should be
    used when validating library or operator configuration.
    """
    if not condition:
        raise ConfigError(message)


def assert_cluster(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ClusterError. This should
    be used when an operation in the cluster must succeed for processing to
    continue.
    """
    if not condition:
        raise ClusterError(message)
