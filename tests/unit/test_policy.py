"""
Unit tests for policy programs and the policy adapter.

Tests cover:
- Loading policy sources and digests
- PolicyHolder swaps
- Decision semantics: only an explicit true allows
- Evaluator failures are errors, never denials
"""

import pytest

from certapprover.errors import EvaluationFailedError, PolicyLoadError
from certapprover.policy import (
    CompiledPolicy,
    PolicyAdapter,
    PolicyHolder,
    digest_sources,
    load_policy_sources,
)


# =============================================================================
# Policy Program Tests
# =============================================================================


class TestPolicySources:
    """Tests for load_policy_sources and digest_sources."""

    def test_load(self, temp_dir):
        path = temp_dir / "approval.rego"
        path.write_text("package approval\n")
        sources = load_policy_sources([path])
        assert sources == {str(path): "package approval\n"}

    def test_load_missing_file(self, temp_dir):
        with pytest.raises(PolicyLoadError) as exc_info:
            load_policy_sources([temp_dir / "missing.rego"])
        assert "missing.rego" in exc_info.value.filename

    def test_digest_is_order_independent(self):
        a = {"a.rego": "package approval", "b.rego": "package approval"}
        b = {"b.rego": "package approval", "a.rego": "package approval"}
        assert digest_sources(a) == digest_sources(b)
        assert len(digest_sources(a)) == 64

    def test_digest_depends_on_filename_and_content(self):
        base = digest_sources({"a.rego": "x"})
        assert digest_sources({"b.rego": "x"}) != base
        assert digest_sources({"a.rego": "y"}) != base


class TestCompiledPolicy:
    def test_defaults(self):
        policy = CompiledPolicy(sources={"a.rego": "x"}, digest=digest_sources({"a.rego": "x"}))
        assert policy.package == "approval"
        assert policy.query == "allow"
        assert len(policy.short_digest) == 12

    def test_requires_sources(self):
        with pytest.raises(ValueError):
            CompiledPolicy(sources={}, digest="0" * 64)


class TestPolicyHolder:
    def test_swap(self, policy, evaluator):
        holder = PolicyHolder(policy)
        replacement = evaluator.compile({"other.rego": "package approval"})

        previous = holder.swap(replacement)

        assert previous is policy
        assert holder.current is replacement


# =============================================================================
# Policy Adapter Tests
# =============================================================================


class TestPolicyAdapter:
    """Tests for PolicyAdapter.decide."""

    @pytest.fixture
    def adapter_for(self, rule_evaluator, policy):
        def build(rule):
            evaluator = rule_evaluator(rule)
            return PolicyAdapter(evaluator, PolicyHolder(policy)), evaluator

        return build

    def test_true_allows(self, adapter_for, make_request, make_namespace):
        adapter, _ = adapter_for(lambda doc: True)
        decision = adapter.decide(make_request(), make_namespace())
        assert decision.allowed is True
        assert decision.reason == "allowed by approval.allow"

    def test_undefined_is_not_allowed(self, adapter_for, make_request, make_namespace):
        adapter, _ = adapter_for(lambda doc: None)
        decision = adapter.decide(make_request(), make_namespace())
        assert decision.allowed is False
        assert "undefined" in decision.reason

    @pytest.mark.parametrize("value", [False, "true", 1, {"allow": True}, [True]])
    def test_non_true_values_are_not_allowed(self, adapter_for, make_request, make_namespace, value):
        adapter, _ = adapter_for(lambda doc: value)
        decision = adapter.decide(make_request(), make_namespace())
        assert decision.allowed is False
        assert "returned" in decision.reason

    def test_input_document(self, adapter_for, make_request, make_namespace):
        adapter, evaluator = adapter_for(lambda doc: None)
        adapter.decide(make_request(), make_namespace(env="prod"))

        [document] = evaluator.documents
        assert document["object"]["metadata"]["name"] == "web"
        assert document["namespace"]["metadata"]["labels"]["env"] == "prod"

    def test_namespace_label_decides(self, reconciler, make_request, make_namespace):
        adapter = reconciler.adapter
        assert adapter.decide(make_request(), make_namespace(env="prod")).allowed
        assert not adapter.decide(make_request(), make_namespace(env="dev")).allowed

    def test_evaluator_error_is_raised_with_key(self, adapter_for, make_request, make_namespace):
        def broken(doc):
            raise EvaluationFailedError(underlying_error="OPA timed out")

        adapter, _ = adapter_for(broken)
        with pytest.raises(EvaluationFailedError) as exc_info:
            adapter.decide(make_request(), make_namespace())
        assert exc_info.value.key == "prod/web"
        assert exc_info.value.underlying_error == "OPA timed out"
        assert exc_info.value.retryable is True

    def test_unexpected_error_becomes_evaluation_failure(self, adapter_for, make_request, make_namespace):
        def broken(doc):
            raise RuntimeError("engine crashed")

        adapter, _ = adapter_for(broken)
        with pytest.raises(EvaluationFailedError, match="engine crashed"):
            adapter.decide(make_request(), make_namespace())

    def test_uses_current_policy(self, adapter_for, make_request, make_namespace, evaluator):
        seen = []
        adapter, _ = adapter_for(lambda doc: None)
        adapter.evaluator.evaluate = lambda policy, doc: seen.append(policy.digest)

        replacement = evaluator.compile({"v2.rego": "package approval"})
        adapter.decide(make_request(), make_namespace())
        adapter.holder.swap(replacement)
        adapter.decide(make_request(), make_namespace())

        assert seen[1] == replacement.digest
        assert seen[0] != seen[1]
