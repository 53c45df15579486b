"""
Shared test config
"""
# Standard
from unittest import mock

# Third Party
import pytest

# Local
from kubeloop.test_helpers.helpers import configure_logging, reset_singletons

configure_logging()


@pytest.fixture(autouse=True)
def no_local_kubeconfig():
    """This fixture makes sure the tests run as if KUBECONFIG is not exported in
    the environment, even if it is
    """
    with mock.patch(
        "kubernetes.config.new_client_from_config", side_effect=RuntimeError
    ):
        yield


@pytest.fixture(autouse=True)
def fresh_singletons():
    """Every test gets its own TimerThread"""
    reset_singletons()
    yield
    reset_singletons()
