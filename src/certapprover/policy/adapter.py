"""
Policy evaluator adapter.

Builds the policy input document from a request and its namespace, asks
the evaluator for the value of the decision rule, and turns that value into
a PolicyDecision.

Decision semantics:
    - Only a value of exactly ``true`` allows. An undefined rule, ``false``,
      or any other value means "not allowed" (the gate defaults closed).
    - An evaluator failure is raised as EvaluationFailedError and is never
      reported as a denial.
"""

import logging
from collections.abc import Mapping
from typing import Any, Protocol

from certapprover.errors import EvaluationFailedError
from certapprover.policy.program import CompiledPolicy, PolicyHolder
from certapprover.schema import CertificateRequest, Namespace, PolicyDecision, PolicyInput

logger = logging.getLogger(__name__)


class PolicyEvaluator(Protocol):
    """
    Interface to an external policy engine.

    Implementations must evaluate without side effects: the same policy and
    document always produce the same value.
    """

    def compile(self, sources: Mapping[str, str]) -> CompiledPolicy:
        """Compile policy modules. Raises PolicyCompileError."""
        ...

    def evaluate(self, policy: CompiledPolicy, document: dict[str, Any]) -> Any:
        """Return the decision rule's value, or None if undefined."""
        ...


class PolicyAdapter:
    """
    Evaluates requests against the active policy.

    Attributes:
        evaluator: The policy engine
        holder: Reference to the active compiled policy
    """

    def __init__(self, evaluator: PolicyEvaluator, holder: PolicyHolder) -> None:
        self.evaluator = evaluator
        self.holder = holder

    def decide(self, request: CertificateRequest, namespace: Namespace) -> PolicyDecision:
        """
        Evaluate one request in the context of its namespace.

        Args:
            request: The certificate request
            namespace: The namespace the request lives in, fetched fresh

        Returns:
            PolicyDecision with allowed=True only for an explicit true result

        Raises:
            EvaluationFailedError: The evaluator failed or the input could
                not be serialized
        """
        key = str(request.key)
        policy = self.holder.current

        try:
            document = PolicyInput(object=request, namespace=namespace).to_document()
            result = self.evaluator.evaluate(policy, document)
        except EvaluationFailedError as e:
            if e.key:
                raise
            raise EvaluationFailedError(key=key, underlying_error=e.underlying_error) from e
        except Exception as e:
            raise EvaluationFailedError(key=key, underlying_error=str(e)) from e

        logger.info(
            "policy evaluation result for %s: %r (policy %s)",
            key,
            result,
            policy.short_digest,
        )

        if result is True:
            return PolicyDecision.allow(f"allowed by {policy.package}.{policy.query}")
        if result is None:
            return PolicyDecision.deny(f"{policy.package}.{policy.query} is undefined")
        return PolicyDecision.deny(f"{policy.package}.{policy.query} returned {result!r}")
