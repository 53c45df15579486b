"""
Exponential backoff used when reconnecting watches and retrying failed
reconciles
"""

# Standard
from typing import Optional
import random

# Local
from . import config, constants
from .utils import config_seconds


def exponential_backoff(
    failures: int,
    base: float,
    multiplier: float,
    maximum: float,
    jitter: float = 0.0,
    max_exponent: int = constants.MAX_RETRY_EXPONENT,
) -> float:
    """Compute the wait before the next attempt:

        min(base * multiplier ** min(failures - 1, max_exponent) + jitter, maximum)

    The exponent is clamped before it is applied so that a very long run of
    failures can never overflow, and the result is clamped so it never
    exceeds maximum.

    Args:
        failures:  int
            The number of consecutive failures. Values below one wait zero
        base:  float
            Seconds to wait after the first failure
        multiplier:  float
            Factor applied for each additional consecutive failure
        maximum:  float
            Upper bound in seconds on the returned wait
        jitter:  float
            Upper bound in seconds on a random wait added before the cap
        max_exponent:  int
            Failure counts past this no longer grow the exponent

    Returns:
        delay:  float
            The number of seconds to wait
    """
    if failures <= 0:
        return 0.0
    exponent = min(failures - 1, max_exponent)
    delay = base * (multiplier**exponent)
    if jitter > 0:
        delay += random.uniform(0, jitter)
    return min(delay, maximum)


def watch_backoff(failures: int, jitter: Optional[float] = None) -> float:
    """Backoff using the watch.* library config"""
    return exponential_backoff(
        failures,
        base=config_seconds("watch.base_backoff"),
        multiplier=config.watch.backoff_multiplier,
        maximum=config_seconds("watch.max_backoff"),
        jitter=config_seconds("watch.backoff_jitter") if jitter is None else jitter,
        max_exponent=config.watch.max_retry_exponent,
    )
