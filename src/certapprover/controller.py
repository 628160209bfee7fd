"""
Reconciliation of a single CertificateRequest.

The Reconciler is the state machine that drives one request to a final
outcome per invocation. It coordinates between:
- Fact Gatherer: Reads the request and its namespace
- Decision check: Skips requests that already carry a decision
- Policy Adapter: Asks the policy whether to approve
- Approver: Writes the approval and emits the event

Reconcile Flow:
    1. Fetch the request. Gone -> NOT_FOUND, nothing else happens
    2. Already Approved/Denied -> ALREADY_DECIDED, nothing else happens
    3. Fetch the namespace. Failure -> FAILED (retry)
    4. Evaluate the policy. Failure -> FAILED (retry)
    5. Allowed -> approve. Failure -> FAILED (retry), Warning event.
       Decided meanwhile -> ALREADY_DECIDED, no write and no event
    6. Not allowed -> NOT_ALLOWED, no write and no event

Design Principles:
    - Level-triggered: every attempt reads fresh state, nothing is cached
      between attempts, and a decision is re-derived on every retry
    - Idempotent: the only write is a condition merge, safe to repeat
    - Scoped failures: an error affects only the attempt that raised it
"""

import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime

from certapprover.approve import Approver
from certapprover.conditions import is_decided
from certapprover.errors import (
    AlreadyDecidedError,
    ReconcileCancelledError,
    ReconcileError,
    RequestNotFoundError,
)
from certapprover.facts import FactGatherer
from certapprover.policy import PolicyAdapter
from certapprover.schema import ObjectKey, PolicyDecision, ReconcileOutcome

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """
    Result of one reconciliation attempt.

    Attributes:
        key: The request that was reconciled
        outcome: How the attempt ended
        decision: The policy decision, for attempts that evaluated the policy
        error: The failure, for FAILED attempts
        duration_ms: Time spent in the attempt
    """

    key: ObjectKey
    outcome: ReconcileOutcome
    decision: PolicyDecision | None = None
    error: ReconcileError | None = None
    duration_ms: float = 0.0

    @property
    def requeue(self) -> bool:
        """Whether the caller should retry this request with backoff."""
        return self.error is not None and self.error.retryable


class Reconciler:
    """
    Drives one request through the approval state machine.

    Usage:
        reconciler = Reconciler(facts, adapter, approver)
        result = reconciler.reconcile(ObjectKey(namespace="prod", name="web"))
        if result.requeue:
            # schedule a retry

    Attributes:
        facts: Reads the request and namespace
        adapter: Evaluates the policy
        approver: Writes approvals
    """

    def __init__(self, facts: FactGatherer, adapter: PolicyAdapter, approver: Approver) -> None:
        self.facts = facts
        self.adapter = adapter
        self.approver = approver

    def reconcile(
        self,
        key: ObjectKey,
        cancel: threading.Event | None = None,
    ) -> ReconcileResult:
        """
        Run one reconciliation attempt.

        Args:
            key: Identity of the request
            cancel: When set, the attempt stops at the next step boundary.
                It is checked last right before the approval is written, so
                a cancelled attempt never commits anything.

        Returns:
            ReconcileResult; errors are returned, not raised
        """
        start_time = datetime.now(UTC)

        try:
            outcome, decision = self._reconcile(key, cancel)
        except RequestNotFoundError:
            logger.debug("certificate request %s not found, it may have been deleted", key)
            return self._result(key, ReconcileOutcome.NOT_FOUND, start_time)
        except ReconcileError as e:
            logger.info("reconciliation of %s failed: %s", key, e.message)
            return self._result(key, ReconcileOutcome.FAILED, start_time, error=e)

        return self._result(key, outcome, start_time, decision)

    def _reconcile(
        self,
        key: ObjectKey,
        cancel: threading.Event | None,
    ) -> tuple[ReconcileOutcome, PolicyDecision | None]:
        _check_cancelled(key, cancel, "fetching the request")
        request = self.facts.fetch_request(key)

        if is_decided(request.conditions):
            logger.info("skipping certificateRequest %s, as it is decided already", key)
            return ReconcileOutcome.ALREADY_DECIDED, None

        _check_cancelled(key, cancel, "fetching the namespace")
        namespace = self.facts.fetch_context(request)

        _check_cancelled(key, cancel, "evaluating the policy")
        decision = self.adapter.decide(request, namespace)

        if not decision.allowed:
            logger.debug("certificate request %s not allowed: %s", key, decision.reason)
            return ReconcileOutcome.NOT_ALLOWED, decision

        _check_cancelled(key, cancel, "writing the approval")
        try:
            self.approver.approve(request)
        except AlreadyDecidedError:
            return ReconcileOutcome.ALREADY_DECIDED, decision
        logger.info("approved certificate request %s", key)
        return ReconcileOutcome.APPROVED, decision

    def _result(
        self,
        key: ObjectKey,
        outcome: ReconcileOutcome,
        start_time: datetime,
        decision: PolicyDecision | None = None,
        error: ReconcileError | None = None,
    ) -> ReconcileResult:
        duration_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
        return ReconcileResult(
            key=key,
            outcome=outcome,
            decision=decision,
            error=error,
            duration_ms=duration_ms,
        )


def _check_cancelled(key: ObjectKey, cancel: threading.Event | None, stage: str) -> None:
    if cancel is not None and cancel.is_set():
        raise ReconcileCancelledError(key=str(key), stage=stage)
