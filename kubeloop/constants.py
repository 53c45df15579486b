"""
Shared module to hold constant values for the library
"""

# Delimiter used for nested dict keys
NESTED_DICT_DELIM = "."

# The control plane rejects finalizer identifiers longer than a label value
FINALIZER_IDENTIFIER_MAX_LENGTH = 63

# Suffix appended to every finalizer name that doesn't already carry it
FINALIZER_NAME_SUFFIX = "finalizer"

# Lease resource used for leader election
LEASE_API_VERSION = "coordination.k8s.io/v1"
LEASE_KIND = "Lease"
LEASE_NAME_SUFFIX = "-leadership"
LEASE_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Default namespace if none given and none can be detected
DEFAULT_NAMESPACE = "default"

# The smallest time the timer thread will sleep
MIN_SLEEP_TIME = 0.001

# The upper bound on the exponent used when computing backoff so that very long
# outages can't overflow the computation
MAX_RETRY_EXPONENT = 39

# Metadata fields that change on every write and never describe intent
VOLATILE_METADATA_FIELDS = ["resourceVersion", "managedFields", "generation"]

# Events published against entities
EVENT_MESSAGE_MAX_LENGTH = 1024
EVENT_MESSAGE_CUT_INFIX = "..."
EVENT_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
EVENT_PUBLISH_ATTEMPTS = 3
