"""
Policy module for certapprover.

The approval decision is delegated to an external, declarative policy
evaluated against a document describing the request and its namespace.

Key concepts:
    - CompiledPolicy: An immutable program accepted by the evaluator
    - PolicyHolder: The shared reference workers read the program from
    - PolicyEvaluator: Interface to the policy engine (OpaClient for OPA)
    - PolicyAdapter: Builds the input document and interprets the result

The gate is closed by default: only an explicit ``true`` from the
``approval.allow`` rule approves a request.
"""

from certapprover.policy.adapter import PolicyAdapter, PolicyEvaluator
from certapprover.policy.opa import OpaClient
from certapprover.policy.program import (
    POLICY_PACKAGE,
    POLICY_QUERY,
    CompiledPolicy,
    PolicyHolder,
    digest_sources,
    load_policy_sources,
)

__all__ = [
    "POLICY_PACKAGE",
    "POLICY_QUERY",
    "CompiledPolicy",
    "OpaClient",
    "PolicyAdapter",
    "PolicyEvaluator",
    "PolicyHolder",
    "digest_sources",
    "load_policy_sources",
]
