"""
Controller loop.

Wires the reconciler to the resource store:

    request watch ----------------------------+
                                              +--> WorkQueue --> workers --> Reconciler
    namespace watch --> filter --> fanout ----+

Failed attempts are put back with exponential backoff; successful ones
reset the key's backoff. The only state shared between workers is the
queue and the read-only policy reference.
"""

import logging
import threading
from typing import Any

from certapprover.approve import Approver
from certapprover.config import WorkerConfig
from certapprover.controller import Reconciler, ReconcileResult
from certapprover.events import EventRecorder, LoggingRecorder
from certapprover.facts import FactGatherer
from certapprover.fanout import NamespaceChangeFilter, keys_for_namespace
from certapprover.policy import CompiledPolicy, PolicyAdapter, PolicyEvaluator, PolicyHolder
from certapprover.schema import ObjectKey
from certapprover.store.base import ResourceStore, WatchEventType
from certapprover.workqueue import ExponentialBackoff, WorkQueue

logger = logging.getLogger(__name__)

# How long shutdown waits for each thread
JOIN_TIMEOUT_SECONDS = 10.0


class Controller:
    """
    Runs watches and a pool of reconcile workers until stopped.

    Usage:
        controller = new_controller(policy, store, evaluator)
        stop = threading.Event()
        controller.run(stop)   # blocks until stop is set

    Attributes:
        reconciler: Per-request state machine
        store: Source of watch events
        queue: Keys waiting for reconciliation
        workers: Number of worker threads
        policy: Shared reference to the active policy
        error: Set if a watch failed unexpectedly and stopped the loop
    """

    def __init__(
        self,
        reconciler: Reconciler,
        store: ResourceStore,
        queue: WorkQueue,
        policy: PolicyHolder,
        workers: int = 2,
    ) -> None:
        self.reconciler = reconciler
        self.store = store
        self.queue = queue
        self.policy = policy
        self.workers = workers
        self.error: BaseException | None = None
        self._namespace_filter = NamespaceChangeFilter()

    def run(self, stop: threading.Event) -> None:
        """
        Start watches and workers, block until ``stop`` is set, then shut
        everything down.
        """
        threads = [
            threading.Thread(target=self._watch_requests, args=(stop,), name="watch-requests", daemon=True),
            threading.Thread(target=self._watch_namespaces, args=(stop,), name="watch-namespaces", daemon=True),
        ]
        threads += [
            threading.Thread(target=self._worker, args=(stop,), name=f"worker-{i}", daemon=True)
            for i in range(self.workers)
        ]

        logger.info(
            "starting controller with %d worker(s), policy %s",
            self.workers,
            self.policy.current.short_digest,
        )
        for thread in threads:
            thread.start()

        stop.wait()

        logger.info("stopping controller")
        self.queue.shutdown()
        self.store.close()
        for thread in threads:
            thread.join(JOIN_TIMEOUT_SECONDS)
        logger.info("completed")

    def process_next(
        self,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> ReconcileResult | None:
        """
        Reconcile the next queued key.

        Returns:
            The result, or None if no key became ready before the timeout
            or the reconciler crashed (the key is then requeued)
        """
        key = self.queue.get(timeout)
        if key is None:
            return None

        try:
            result = self.reconciler.reconcile(key, cancel)
        except Exception:
            logger.exception("unexpected error reconciling %s", key)
            self.queue.add_rate_limited(key)
            return None
        finally:
            self.queue.done(key)

        if result.requeue:
            delay = self.queue.add_rate_limited(key)
            logger.info(
                "requeue %s in %.3fs after %s",
                key,
                delay,
                type(result.error).__name__,
            )
        else:
            self.queue.forget(key)
        return result

    def enqueue(self, key: ObjectKey) -> None:
        self.queue.add(key)

    # =========================================================================
    # Threads
    # =========================================================================

    def _worker(self, stop: threading.Event) -> None:
        while not self.queue.shutting_down:
            self.process_next(cancel=stop)

    def _watch_requests(self, stop: threading.Event) -> None:
        def handle(event: Any) -> None:
            key = event.object.key
            if event.type == WatchEventType.DELETED:
                self.queue.forget(key)
                return
            self.queue.add(key)

        self._consume("certificaterequests", self.store.watch_requests(), handle, stop)

    def _watch_namespaces(self, stop: threading.Event) -> None:
        def handle(event: Any) -> None:
            namespace = event.object
            if event.type == WatchEventType.DELETED:
                self._namespace_filter.forget(namespace.name)
                return
            if not self._namespace_filter.changed(namespace):
                return
            for key in keys_for_namespace(self.store, namespace):
                self.queue.add(key)

        self._consume("namespaces", self.store.watch_namespaces(), handle, stop)

    def _consume(self, resource: str, events: Any, handle: Any, stop: threading.Event) -> None:
        try:
            for event in events:
                if stop.is_set():
                    return
                handle(event)
        except Exception as e:
            if stop.is_set():
                return
            logger.exception("watch on %s failed", resource)
            self.error = e
            stop.set()


def new_controller(
    policy: CompiledPolicy,
    store: ResourceStore,
    evaluator: PolicyEvaluator,
    recorder: EventRecorder | None = None,
    config: WorkerConfig | None = None,
) -> Controller:
    """
    Build a runnable controller.

    Args:
        policy: The compiled policy, shared read-only by all workers
        store: Resource store client
        evaluator: The policy engine that compiled ``policy``
        recorder: Event sink; defaults to logging events
        config: Worker pool and backoff settings

    Returns:
        A Controller ready for ``run``
    """
    config = config or WorkerConfig()
    recorder = recorder or LoggingRecorder()
    holder = PolicyHolder(policy)

    reconciler = Reconciler(
        facts=FactGatherer(store),
        adapter=PolicyAdapter(evaluator, holder),
        approver=Approver(store, recorder),
    )
    queue = WorkQueue(
        ExponentialBackoff(
            base=config.backoff_base_seconds,
            max_delay=config.backoff_max_seconds,
        )
    )
    return Controller(reconciler, store, queue, holder, workers=config.workers)
