"""
This module holds common helper functions for making testing easy
"""

# Standard
from contextlib import contextmanager
from typing import Callable, List, Optional
import copy
import os
import time
import uuid

# First Party
import aconfig
import alog

# Local
from ..config import library_config as config_detail_dict
from ..log_format import KubeloopJsonFormatter
from ..snapshot import EntityType, ResourceSnapshot
from ..utils import Singleton

log = alog.use_channel("TEST")


def configure_logging():
    alog.configure(
        os.environ.get("LOG_LEVEL", "off"),
        os.environ.get("LOG_FILTERS", ""),
        formatter=KubeloopJsonFormatter()
        if os.environ.get("LOG_JSON", "").lower() == "true"
        else "pretty",
        thread_id=os.environ.get("LOG_THREAD_ID", "").lower() == "true",
    )


configure_logging()

TEST_NAMESPACE = "test"
TEST_GROUP = "foo.bar.com"
TEST_VERSION = "v1"
TEST_KIND = "Widget"
TEST_ENTITY_TYPE = EntityType(group=TEST_GROUP, version=TEST_VERSION, kind=TEST_KIND)


@contextmanager
def library_config(**config_overrides):
    """This context manager sets library config values temporarily and reverts
    them on completion. Dict values are merged into the existing section so a
    test only needs to name the keys it changes, e.g.
    library_config(watch={"max_backoff": "1s"})
    """
    old_vals = {}
    for key, val in config_overrides.items():
        if key in config_detail_dict:
            old_vals[key] = config_detail_dict[key]
        if isinstance(val, dict) and isinstance(config_detail_dict.get(key), dict):
            merged = copy.deepcopy(dict(config_detail_dict[key]))
            merged.update(val)
            val = aconfig.Config(merged, override_env_vars=False)
        config_detail_dict[key] = val

    try:
        yield
    finally:
        for key in config_overrides:
            if key in old_vals:
                config_detail_dict[key] = old_vals[key]
            else:
                del config_detail_dict[key]


def reset_singletons():
    """Drop every singleton instance so each test gets fresh threads"""
    Singleton.reset()


def make_resource(  # pylint: disable=too-many-arguments
    name: str = "test",
    namespace: str = TEST_NAMESPACE,
    entity_type: EntityType = TEST_ENTITY_TYPE,
    spec: Optional[dict] = None,
    status: Optional[dict] = None,
    uid: Optional[str] = None,
    resource_version: Optional[str] = None,
    finalizers: Optional[List[str]] = None,
    deletion_timestamp: Optional[str] = None,
    labels: Optional[dict] = None,
) -> dict:
    """Build a resource definition dict"""
    metadata = {
        "name": name,
        "namespace": namespace,
        "uid": uid or str(uuid.uuid4()),
    }
    if resource_version is not None:
        metadata["resourceVersion"] = resource_version
    if finalizers is not None:
        metadata["finalizers"] = finalizers
    if deletion_timestamp is not None:
        metadata["deletionTimestamp"] = deletion_timestamp
    if labels is not None:
        metadata["labels"] = labels

    resource = {
        "apiVersion": entity_type.api_version,
        "kind": entity_type.kind,
        "metadata": metadata,
        "spec": spec if spec is not None else {"replicas": 1},
    }
    if status is not None:
        resource["status"] = status
    return resource


def make_snapshot(**kwargs) -> ResourceSnapshot:
    """Build a ResourceSnapshot with make_resource"""
    kwargs.setdefault("resource_version", "1")
    return ResourceSnapshot(make_resource(**kwargs))


def wait_for(
    condition: Callable[[], bool], timeout: float = 5, interval: float = 0.01
) -> bool:
    """Poll until condition is true or the timeout expires

    Returns:
        met:  bool
            Whether the condition became true in time
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()
