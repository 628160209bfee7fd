"""
Unit tests for schema models.

Tests cover:
- ObjectKey identity and parsing
- Resource models and wire aliases
- Policy input document layout
- PolicyDecision constructors
"""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from certapprover.schema import (
    CertificateRequest,
    Condition,
    ConditionStatus,
    Namespace,
    ObjectKey,
    PolicyDecision,
    PolicyInput,
    to_wire,
)


# =============================================================================
# ObjectKey Tests
# =============================================================================


class TestObjectKey:
    """Tests for ObjectKey."""

    def test_str(self):
        assert str(ObjectKey(namespace="prod", name="web")) == "prod/web"

    def test_hashable_and_equal_by_value(self):
        a = ObjectKey(namespace="prod", name="web")
        b = ObjectKey(namespace="prod", name="web")
        assert a == b
        assert len({a, b}) == 1

    def test_parse(self):
        key = ObjectKey.parse("prod/web")
        assert key.namespace == "prod"
        assert key.name == "web"

    def test_parse_without_namespace_fails(self):
        with pytest.raises(ValueError, match="namespace/name"):
            ObjectKey.parse("web")

    def test_frozen(self):
        key = ObjectKey(namespace="prod", name="web")
        with pytest.raises(ValidationError):
            key.name = "other"


# =============================================================================
# Resource Model Tests
# =============================================================================


class TestCertificateRequest:
    """Tests for the CertificateRequest model."""

    def test_parse_wire_form(self):
        request = CertificateRequest.model_validate({
            "apiVersion": "cert-manager.io/v1",
            "kind": "CertificateRequest",
            "metadata": {"name": "web", "namespace": "prod", "resourceVersion": "17"},
            "spec": {"request": "abc", "usages": ["digital signature"]},
            "status": {
                "conditions": [
                    {
                        "type": "Ready",
                        "status": "False",
                        "reason": "Pending",
                        "lastTransitionTime": "2024-05-01T12:00:00Z",
                    }
                ]
            },
        })

        assert request.key == ObjectKey(namespace="prod", name="web")
        assert request.metadata.resource_version == "17"
        assert request.conditions[0].status == ConditionStatus.FALSE
        assert request.conditions[0].last_transition_time == datetime(2024, 5, 1, 12, tzinfo=UTC)

    def test_unknown_fields_are_kept(self):
        request = CertificateRequest.model_validate({
            "metadata": {"name": "web", "namespace": "prod", "creationTimestamp": "2024-05-01T12:00:00Z"},
            "spec": {},
        })
        wire = to_wire(request)
        assert wire["metadata"]["creationTimestamp"] == "2024-05-01T12:00:00Z"

    def test_defaults(self):
        request = CertificateRequest.model_validate({"metadata": {"name": "web", "namespace": "prod"}})
        assert request.api_version == "cert-manager.io/v1"
        assert request.kind == "CertificateRequest"
        assert request.conditions == []

    def test_name_required(self):
        with pytest.raises(ValidationError):
            CertificateRequest.model_validate({"metadata": {"namespace": "prod"}})


class TestCondition:
    """Tests for Condition."""

    def test_is_true(self):
        assert Condition(type="Approved", status=ConditionStatus.TRUE).is_true
        assert not Condition(type="Approved", status=ConditionStatus.FALSE).is_true

    def test_wire_form_uses_camel_case(self):
        cond = Condition(
            type="Approved",
            status=ConditionStatus.TRUE,
            reason="certapprover",
            last_transition_time=datetime(2024, 5, 1, 12, tzinfo=UTC),
        )
        wire = to_wire(cond)
        assert wire["status"] == "True"
        assert "lastTransitionTime" in wire
        assert "message" not in wire


# =============================================================================
# Policy Model Tests
# =============================================================================


class TestPolicyInput:
    """Tests for the policy input document."""

    def test_document_layout(self, make_request, make_namespace):
        document = PolicyInput(
            object=make_request(),
            namespace=make_namespace(env="prod"),
        ).to_document()

        assert set(document) == {"object", "namespace"}
        assert document["object"]["kind"] == "CertificateRequest"
        assert document["object"]["metadata"]["name"] == "web"
        assert document["namespace"]["metadata"]["labels"] == {"env": "prod"}

    def test_document_is_json_ready(self, make_request, make_namespace):
        import json

        document = PolicyInput(object=make_request(), namespace=make_namespace()).to_document()
        assert json.loads(json.dumps(document)) == document


class TestPolicyDecision:
    """Tests for PolicyDecision."""

    def test_allow(self):
        decision = PolicyDecision.allow("ok")
        assert decision.allowed is True
        assert decision.reason == "ok"

    def test_deny(self):
        decision = PolicyDecision.deny("no")
        assert decision.allowed is False


class TestNamespace:
    def test_name(self):
        ns = Namespace.model_validate({"metadata": {"name": "prod", "labels": {"env": "prod"}}})
        assert ns.name == "prod"
        assert ns.metadata.labels["env"] == "prod"
