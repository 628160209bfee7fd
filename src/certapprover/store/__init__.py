"""
Storage module for certapprover.

The controller reads CertificateRequests and Namespaces from a resource
store and writes exactly one thing back: the Approved status condition.

Implementations:
    - KubeStore: the Kubernetes API, over httpx
    - InMemoryStore: process-local store for tests and dry runs

Both honour the same contract: not-found, conflict and transient failures
are reported as ObjectNotFoundError, ConflictError and StoreError, and a
status patch merges conditions by type instead of replacing the status.
A status patch never lands on a request that is already Approved or
Denied; AlreadyDecidedError is raised instead.
"""

from certapprover.store.base import ResourceStore, WatchEvent, WatchEventType
from certapprover.store.kube import KubeStore
from certapprover.store.memory import InMemoryStore

__all__ = [
    "InMemoryStore",
    "KubeStore",
    "ResourceStore",
    "WatchEvent",
    "WatchEventType",
]
