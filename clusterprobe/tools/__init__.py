"""clusterprobe Tools Package"""

from .kubernetes import (
    KubeClients,
    LabeledObjectDriver,
    ConfigMapDriver,
    PodDriver,
    call_api,
    is_not_found,
    label_selector,
)

__all__ = [
    "KubeClients",
    "LabeledObjectDriver",
    "ConfigMapDriver",
    "PodDriver",
    "call_api",
    "is_not_found",
    "label_selector",
]
