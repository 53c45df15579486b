"""
Shared utilities used across the engine
"""
# Standard
from datetime import timedelta
from typing import Any, Optional, Union
import hashlib
import json
import pathlib
import platform
import re

# First Party
import alog

# Local
from .. import config, constants
from ..exceptions import ConfigError

log = alog.use_channel("UTILS")

# Sentinel for missing dict values
__MISSING__ = "__MISSING__"


## Time Functions ##############################################################

# Shamelessly stolen from
# https://stackoverflow.com/questions/4628122/how-to-construct-a-timedelta-object-from-a-simple-string
regex = re.compile(
    r"^((?P<hours>\d+?)hr)?((?P<minutes>\d+?)m)?((?P<seconds>\d*\.?\d+?)s)?$"
)


def parse_time_delta(
    time_str: str,
) -> Optional[timedelta]:  # pylint: disable=inconsistent-return-statements
    """Parse a string into a timedelta. Excepts values in the
    following formats: 1hr, 5m, 10s, 1m30s, 0.5s

    Args:
        time_str: str
            The string representation of a timedelta

    Returns:
        result: Optional[timedelta]
            The parsed timedelta if one could be found
    """
    parts = regex.match(time_str)
    if not parts or all(part is None for part in parts.groupdict().values()):
        return None
    parts = parts.groupdict()
    time_params = {}
    for name, param in parts.items():
        if param:
            time_params[name] = float(param)
    return timedelta(**time_params)


def config_seconds(key: str) -> float:
    """Read a duration from the library config as a number of seconds

    Args:
        key: str
            Nested key into the library config, e.g. "watch.max_backoff"

    Returns:
        seconds: float
            The parsed duration in seconds
    """
    value = nested_get(config.library_config, key)
    delta = parse_time_delta(value) if isinstance(value, str) else None
    if delta is None:
        log.error("Invalid '%s' value: '%s'", key, value)
        raise ConfigError(f"Invalid '{key}' value: '{value}'")
    return delta.total_seconds()


def to_seconds(delay: Union[int, float, timedelta]) -> float:
    """Normalize a delay given as seconds or a timedelta into seconds"""
    if isinstance(delay, timedelta):
        return delay.total_seconds()
    return float(delay)


## Identity Util Functions #####################################################


def get_operator_namespace() -> str:
    """Get the current namespace from a kubernetes file or config"""
    namespace_file = pathlib.Path(
        "/var/run/secrets/kubernetes.io/serviceaccount/namespace"
    )
    if namespace_file.is_file():
        return namespace_file.read_text(encoding="utf-8").strip()
    return config.leader_election.namespace or constants.DEFAULT_NAMESPACE


def get_pod_name() -> str:
    """Get the current pod from env variables, config, or hostname"""
    pod_name = config.pod_name
    if not pod_name:
        log.warning("Pod name not detected, falling back to hostname")
        pod_name = platform.node().split(".")[0]
    return pod_name


## Dict Functions ##############################################################


def nested_get(dct: dict, key: str, dflt=None) -> Any:
    """Helper to get values from a dict using 'foo.bar' key notation

    Args:
        dct:  dict
            The dict to read from
        key:  str
            Key that may contain '.' notation indicating dict nesting

    Returns:
        val:  Any
            Whatever is found at the given key or dflt if the key is not found.
            This includes missing intermediate dicts.
    """
    parts = key.split(constants.NESTED_DICT_DELIM)
    for i, part in enumerate(parts[:-1]):
        dct = dct.get(part, __MISSING__)
        if dct is __MISSING__:
            return dflt
        if not isinstance(dct, dict):
            raise TypeError(
                f"Intermediate key {constants.NESTED_DICT_DELIM.join(parts[:i])} "
                "is not a dict"
            )
    return dct.get(parts[-1], dflt)


def obj_to_hash(obj: Any) -> str:
    """Get a stable hash of any jsonable python object

    Args:
        obj: Any
            The object to hash

    Returns:
        hash: str
            The hex digest of obj's canonical json form
    """
    return hashlib.sha256(
        json.dumps(obj, sort_keys=True, default=str).encode("utf-8")
    ).hexdigest()
