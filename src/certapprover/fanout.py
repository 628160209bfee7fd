"""
Namespace change fanout.

A decision depends on the request *and* its namespace. When a namespace
changes, every request in it is offered to the policy again, so a request
left pending can be approved without anyone touching the request itself.
"""

import logging
import threading

from certapprover.errors import StoreError
from certapprover.schema import Namespace, ObjectKey
from certapprover.store.base import ResourceStore

logger = logging.getLogger(__name__)


def keys_for_namespace(store: ResourceStore, namespace: Namespace) -> list[ObjectKey]:
    """
    List the keys of all requests in a namespace.

    A listing failure is logged and yields an empty list. Losing one
    refresh trigger is preferred over stopping the namespace watch.
    """
    try:
        requests = store.list_requests(namespace.name)
    except StoreError as e:
        logger.error(
            "unable to retrieve associated certificate requests for namespace %s: %s",
            namespace.name,
            e.message,
        )
        return []

    keys = [r.key for r in requests]
    logger.info(
        "enqueuing requests for objects due to namespace change: namespace=%s objects=%s",
        namespace.name,
        [str(k) for k in keys],
    )
    return keys


class NamespaceChangeFilter:
    """
    Passes a namespace notification only if its resourceVersion changed.

    Watch reconnects and resyncs redeliver objects that did not change;
    those would otherwise fan out to every request in the namespace.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seen: dict[str, str | None] = {}

    def changed(self, namespace: Namespace) -> bool:
        version = namespace.metadata.resource_version
        with self._lock:
            previous = self._seen.get(namespace.name, "")
            self._seen[namespace.name] = version
        return version is None or version != previous

    def forget(self, name: str) -> None:
        with self._lock:
            self._seen.pop(name, None)
