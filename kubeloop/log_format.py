"""
Custom logging formats that add resource context to kubeloop logs
"""

# First Party
from alog import AlogJsonFormatter


class KubeloopJsonFormatter(AlogJsonFormatter):
    """Custom Log Format that extends AlogJsonFormatter to add thread
    information and, when a log call passes extra={"resource": snapshot}, the
    identifiers of that resource
    """

    _FIELDS_TO_PRINT = AlogJsonFormatter._FIELDS_TO_PRINT + [
        "process",
        "thread",
        "threadName",
        "kind",
        "apiVersion",
        "resourceVersion",
        "resourceName",
        "resourceNamespace",
    ]

    def format(self, record):
        resource = getattr(record, "resource", None)
        if resource is not None:
            metadata = resource.get("metadata") or {}
            record.kind = resource.get("kind")
            record.apiVersion = resource.get("apiVersion")
            record.resourceVersion = metadata.get("resourceVersion")
            record.resourceName = metadata.get("name")
            record.resourceNamespace = metadata.get("namespace")
        return super().format(record)
