"""
Loads the library config and its validation schema at import time, then
configures alog from the loaded values
"""

# Standard
import os

# First Party
import aconfig
import alog

# Local
from ..exceptions import ConfigError
from ..log_format import KubeloopJsonFormatter
from .validation import get_invalid_params

_CONFIG_DIR = os.path.dirname(__file__)


def _load(file_name: str, override_env_vars: bool) -> aconfig.Config:
    return aconfig.Config.from_yaml(
        os.path.join(_CONFIG_DIR, file_name),
        override_env_vars=override_env_vars,
    )


def configure_logging(config: aconfig.Config):
    """Apply the log_* keys of the given config to alog"""
    alog.configure(
        default_level=config.log_level,
        filters=config.log_filters,
        formatter=KubeloopJsonFormatter() if config.log_json else "pretty",
        thread_id=config.log_thread_id,
    )


# Every key in config.yaml can be overridden with an env var such as
# WATCH_MAX_BACKOFF. The schema itself is never overridden.
library_config = _load("config.yaml", override_env_vars=True)
validation_config = _load("config_validation.yaml", override_env_vars=False)

invalid_params = get_invalid_params(library_config, validation_config)
if invalid_params:
    raise ConfigError(f"Library configuration found invalid values: {invalid_params}")

configure_logging(library_config)
