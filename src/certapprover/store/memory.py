"""
In-memory resource store.

A thread-safe store with Kubernetes-like semantics: every write bumps a
resource version, status patches merge conditions by type under a lock, and
watch streams first replay the current objects as ADDED events and then
deliver each change.

Used by the test suite and by the ``evaluate`` dry-run command, which loads
objects from a YAML fixture file.

Fixture format (one or more YAML documents):
    kind: Namespace
    metadata: {name: prod, labels: {env: prod}}
    ---
    kind: CertificateRequest
    metadata: {name: web, namespace: prod}
    spec: {...}

A document with ``kind: List`` and an ``items`` list is also accepted.
"""

import logging
import queue
import threading
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

import yaml

from certapprover.conditions import is_decided, merge_conditions
from certapprover.errors import AlreadyDecidedError, ApproverError, ObjectNotFoundError
from certapprover.schema import CertificateRequest, Condition, Namespace, ObjectKey
from certapprover.store.base import WatchEvent, WatchEventType

logger = logging.getLogger(__name__)

_REQUESTS = "certificaterequests"
_NAMESPACES = "namespaces"


class InMemoryStore:
    """
    Resource store held in process memory.

    Besides the ResourceStore operations, tests can seed objects with
    ``put_request`` / ``put_namespace``, make the next call of an operation
    fail with ``inject_failure``, and inspect ``calls``.

    Attributes:
        calls: (operation, argument) tuples for every store call made
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._version = 0
        self._requests: dict[ObjectKey, CertificateRequest] = {}
        self._namespaces: dict[str, Namespace] = {}
        self._watchers: dict[str, list[queue.Queue]] = {_REQUESTS: [], _NAMESPACES: []}
        self._failures: dict[str, list[ApproverError]] = {}
        self._closed = False
        self.calls: list[tuple[str, str]] = []

    # =========================================================================
    # Seeding and inspection
    # =========================================================================

    def put_request(self, request: CertificateRequest) -> CertificateRequest:
        """Create or replace a request, as an external actor would."""
        with self._lock:
            event_type = (
                WatchEventType.MODIFIED if request.key in self._requests else WatchEventType.ADDED
            )
            stored = self._stamp(request)
            self._requests[stored.key] = stored
            self._notify(_REQUESTS, WatchEvent(event_type, stored))
            return stored

    def put_namespace(self, namespace: Namespace) -> Namespace:
        """Create or replace a namespace, as an external actor would."""
        with self._lock:
            event_type = (
                WatchEventType.MODIFIED
                if namespace.name in self._namespaces
                else WatchEventType.ADDED
            )
            stored = self._stamp(namespace)
            self._namespaces[stored.name] = stored
            self._notify(_NAMESPACES, WatchEvent(event_type, stored))
            return stored

    def delete_request(self, key: ObjectKey) -> None:
        with self._lock:
            removed = self._requests.pop(key, None)
            if removed is not None:
                self._notify(_REQUESTS, WatchEvent(WatchEventType.DELETED, removed))

    def inject_failure(self, operation: str, error: ApproverError, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        with self._lock:
            self._failures.setdefault(operation, []).extend([error] * times)

    def count(self, operation: str) -> int:
        """Number of calls made to an operation."""
        return sum(1 for op, _ in self.calls if op == operation)

    def load_fixtures(self, path: Path | str) -> None:
        """Load namespaces and requests from a YAML fixture file."""
        with Path(path).open() as f:
            documents = [doc for doc in yaml.safe_load_all(f) if doc]

        for doc in documents:
            for item in _expand(doc):
                kind = item.get("kind")
                if kind == "Namespace":
                    self.put_namespace(Namespace.model_validate(item))
                elif kind == "CertificateRequest":
                    self.put_request(CertificateRequest.model_validate(item))
                else:
                    msg = f"Unsupported fixture kind: {kind!r}"
                    raise ValueError(msg)

        logger.debug(
            "loaded fixtures from %s: %d namespace(s), %d request(s)",
            path,
            len(self._namespaces),
            len(self._requests),
        )

    # =========================================================================
    # ResourceStore operations
    # =========================================================================

    def get_request(self, key: ObjectKey) -> CertificateRequest:
        with self._lock:
            self._record("get_request", str(key))
            request = self._requests.get(key)
            if request is None:
                raise ObjectNotFoundError(operation="get", resource=_REQUESTS, key=str(key))
            return request

    def get_namespace(self, name: str) -> Namespace:
        with self._lock:
            self._record("get_namespace", name)
            namespace = self._namespaces.get(name)
            if namespace is None:
                raise ObjectNotFoundError(operation="get", resource=_NAMESPACES, key=name)
            return namespace

    def requests(self) -> list[CertificateRequest]:
        """All stored requests, without recording a call."""
        with self._lock:
            return list(self._requests.values())

    def list_requests(self, namespace: str) -> list[CertificateRequest]:
        with self._lock:
            self._record("list_requests", namespace)
            return [r for k, r in self._requests.items() if k.namespace == namespace]

    def patch_status(
        self,
        key: ObjectKey,
        conditions: Sequence[Condition],
    ) -> CertificateRequest:
        """
        Merge conditions into a request's status.

        The decision check and the write happen under one lock, so a
        request decided concurrently is never patched.
        """
        with self._lock:
            self._record("patch_status", str(key))
            current = self._requests.get(key)
            if current is None:
                raise ObjectNotFoundError(operation="patch", resource=_REQUESTS, key=str(key))
            if is_decided(current.conditions):
                raise AlreadyDecidedError(operation="patch", resource=_REQUESTS, key=str(key))

            status = current.status.model_copy(
                update={"conditions": merge_conditions(current.conditions, conditions)}
            )
            stored = self._stamp(current.model_copy(update={"status": status}))
            self._requests[key] = stored
            self._notify(_REQUESTS, WatchEvent(WatchEventType.MODIFIED, stored))
            return stored

    def watch_requests(self) -> Iterator[WatchEvent[CertificateRequest]]:
        return self._watch(_REQUESTS)

    def watch_namespaces(self) -> Iterator[WatchEvent[Namespace]]:
        return self._watch(_NAMESPACES)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            for watchers in self._watchers.values():
                for q in watchers:
                    q.put(None)

    # =========================================================================
    # Internals
    # =========================================================================

    def _stamp(self, obj: Any) -> Any:
        self._version += 1
        meta = obj.metadata.model_copy(update={"resource_version": str(self._version)})
        return obj.model_copy(update={"metadata": meta})

    def _record(self, operation: str, argument: str) -> None:
        self.calls.append((operation, argument))
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _notify(self, resource: str, event: WatchEvent) -> None:
        for q in self._watchers[resource]:
            q.put(event)

    def _watch(self, resource: str) -> Iterator[WatchEvent]:
        q: queue.Queue = queue.Queue()
        with self._lock:
            if self._closed:
                return
            if resource == _REQUESTS:
                snapshot = list(self._requests.values())
            else:
                snapshot = list(self._namespaces.values())
            self._watchers[resource].append(q)

        try:
            for obj in snapshot:
                yield WatchEvent(WatchEventType.ADDED, obj)
            while True:
                event = q.get()
                if event is None:
                    return
                yield event
        finally:
            with self._lock:
                self._watchers[resource].remove(q)


def _expand(doc: dict[str, Any]) -> list[dict[str, Any]]:
    if str(doc.get("kind") or "").endswith("List"):
        return list(doc.get("items") or [])
    return [doc]
