"""
Pytest configuration and fixtures for certapprover tests.

This module provides shared fixtures used across unit and integration
tests: an in-memory store, object factories, a deterministic policy
evaluator and a reconciler wired to all of them.
"""

import tempfile
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

import pytest

from certapprover.approve import Approver
from certapprover.controller import Reconciler
from certapprover.events import MemoryRecorder
from certapprover.facts import FactGatherer
from certapprover.policy import CompiledPolicy, PolicyAdapter, PolicyHolder, digest_sources
from certapprover.schema import CertificateRequest, Condition, Namespace
from certapprover.store import InMemoryStore

FIXED_NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)

ENV_PROD_POLICY = """package approval

default allow := false

allow if input.namespace.metadata.labels.env == "prod"
"""


class RuleEvaluator:
    """
    Policy evaluator running a Python rule over the input document.

    Stands in for OPA: same document in, same value out. Every evaluated
    document is kept in ``documents``; ``fail_with`` makes evaluation
    raise instead.
    """

    def __init__(self, rule: Callable[[dict[str, Any]], Any]) -> None:
        self.rule = rule
        self.documents: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None

    def compile(self, sources: Mapping[str, str]) -> CompiledPolicy:
        return CompiledPolicy(sources=dict(sources), digest=digest_sources(sources))

    def evaluate(self, policy: CompiledPolicy, document: dict[str, Any]) -> Any:
        self.documents.append(document)
        if self.fail_with is not None:
            raise self.fail_with
        return self.rule(document)


def env_prod_rule(document: dict[str, Any]) -> Any:
    """allow if input.namespace.metadata.labels.env == "prod" (undefined otherwise)"""
    labels = document["namespace"]["metadata"].get("labels") or {}
    return True if labels.get("env") == "prod" else None


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_request() -> Callable[..., CertificateRequest]:
    """Factory for CertificateRequest objects."""

    def factory(
        name: str = "web",
        namespace: str = "prod",
        conditions: list[Condition] | None = None,
        **spec: Any,
    ) -> CertificateRequest:
        return CertificateRequest.model_validate({
            "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{namespace}-{name}"},
            "spec": spec or {"request": "LS0tLS1CRUdJTi...", "issuerRef": {"name": "ca", "kind": "Issuer"}},
            "status": {"conditions": [c.model_dump(by_alias=True) for c in conditions or []]},
        })

    return factory


@pytest.fixture
def make_namespace() -> Callable[..., Namespace]:
    """Factory for Namespace objects."""

    def factory(name: str = "prod", **labels: str) -> Namespace:
        return Namespace.model_validate({"metadata": {"name": name, "labels": labels}})

    return factory


@pytest.fixture
def store() -> Generator[InMemoryStore, None, None]:
    """An empty in-memory store."""
    s = InMemoryStore()
    yield s
    s.close()


@pytest.fixture
def recorder() -> MemoryRecorder:
    return MemoryRecorder()


@pytest.fixture
def evaluator() -> RuleEvaluator:
    """Evaluator allowing requests in namespaces labelled env=prod."""
    return RuleEvaluator(env_prod_rule)


@pytest.fixture
def rule_evaluator() -> type[RuleEvaluator]:
    """The evaluator class, for tests that need a different rule."""
    return RuleEvaluator


@pytest.fixture
def policy(evaluator: RuleEvaluator) -> CompiledPolicy:
    return evaluator.compile({"approval.rego": ENV_PROD_POLICY})


@pytest.fixture
def reconciler(
    store: InMemoryStore,
    evaluator: RuleEvaluator,
    policy: CompiledPolicy,
    recorder: MemoryRecorder,
) -> Reconciler:
    """A reconciler wired to the store, evaluator and recorder fixtures."""
    return Reconciler(
        facts=FactGatherer(store),
        adapter=PolicyAdapter(evaluator, PolicyHolder(policy)),
        approver=Approver(store, recorder, clock=lambda: FIXED_NOW),
    )
