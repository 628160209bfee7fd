"""
Schema definitions for certapprover.

This module defines the Pydantic models shared by the controller:
- ObjectKey: Identity of a CertificateRequest (namespace + name)
- CertificateRequest / Namespace: The two resources read from the store
- Condition: One entry of a request's status condition list
- PolicyInput: The document handed to the policy evaluator
- PolicyDecision: The result of policy evaluation
- Event: A notification about a request

Design Decisions:
    - Resource models mirror the Kubernetes JSON shape and accept the
      camelCase wire names through aliases
    - Unknown resource fields are kept (extra="allow") so the policy sees
      the whole object, not just the fields modelled here
    - Everything is frozen; the controller never edits an object in place
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums
# =============================================================================


class ConditionStatus(str, Enum):
    """Status value of a condition, as written on the wire."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class EventSeverity(str, Enum):
    """Severity of an emitted event."""

    NORMAL = "Normal"
    WARNING = "Warning"


class ReconcileOutcome(str, Enum):
    """
    How a single reconciliation attempt ended.

    APPROVED, NOT_ALLOWED, ALREADY_DECIDED and NOT_FOUND are final for the
    attempt. FAILED attempts are retried by the caller.
    """

    APPROVED = "approved"
    NOT_ALLOWED = "not_allowed"
    ALREADY_DECIDED = "already_decided"
    NOT_FOUND = "not_found"
    FAILED = "failed"


# Condition types meaningful to the approval gate
CONDITION_APPROVED = "Approved"
CONDITION_DENIED = "Denied"
CONDITION_READY = "Ready"


# =============================================================================
# Resource Models
# =============================================================================


class ObjectKey(BaseModel):
    """
    Identity of a namespaced object.

    Keys are hashable and compare by value, so they can be used directly
    as work queue entries.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    namespace: str = Field(..., description="Namespace the object lives in")
    name: str = Field(..., min_length=1, description="Object name")

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> "ObjectKey":
        """Parse a "namespace/name" string."""
        namespace, sep, name = value.partition("/")
        if not sep:
            msg = f"Expected namespace/name, got: {value}"
            raise ValueError(msg)
        return cls(namespace=namespace, name=name)


class ObjectMeta(BaseModel):
    """Subset of Kubernetes object metadata used by the controller."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    name: str = Field(..., min_length=1)
    namespace: str | None = Field(default=None)
    uid: str | None = Field(default=None)
    resource_version: str | None = Field(default=None, alias="resourceVersion")
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class Condition(BaseModel):
    """
    A single status condition.

    Attributes:
        type: Condition type, e.g. "Approved", "Denied", "Ready"
        status: "True", "False" or "Unknown"
        reason: Machine-readable reason code
        message: Human-readable detail
        last_transition_time: When the condition last changed status
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    type: str = Field(..., min_length=1)
    status: ConditionStatus = Field(default=ConditionStatus.UNKNOWN)
    reason: str | None = Field(default=None)
    message: str | None = Field(default=None)
    last_transition_time: datetime | None = Field(default=None, alias="lastTransitionTime")

    @property
    def is_true(self) -> bool:
        return self.status == ConditionStatus.TRUE


class CertificateRequestStatus(BaseModel):
    """Status block of a CertificateRequest."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    conditions: list[Condition] = Field(default_factory=list)


class CertificateRequest(BaseModel):
    """
    A cert-manager CertificateRequest.

    The ``spec`` field is kept as an opaque mapping; the approval gate never
    interprets it, it only forwards it to the policy.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    api_version: str = Field(default="cert-manager.io/v1", alias="apiVersion")
    kind: str = Field(default="CertificateRequest")
    metadata: ObjectMeta
    spec: dict[str, Any] = Field(default_factory=dict)
    status: CertificateRequestStatus = Field(default_factory=CertificateRequestStatus)

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.metadata.namespace or "", name=self.metadata.name)

    @property
    def conditions(self) -> list[Condition]:
        return self.status.conditions


class Namespace(BaseModel):
    """A Kubernetes Namespace: the context a request was submitted in."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    api_version: str = Field(default="v1", alias="apiVersion")
    kind: str = Field(default="Namespace")
    metadata: ObjectMeta
    spec: dict[str, Any] = Field(default_factory=dict)
    status: dict[str, Any] = Field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.metadata.name


def to_wire(obj: BaseModel) -> dict[str, Any]:
    """Dump a resource model in its Kubernetes JSON form."""
    return obj.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Policy Models
# =============================================================================


class PolicyInput(BaseModel):
    """
    The input document for one policy evaluation.

    The document layout is a stable contract with policy authors:

        object:     the CertificateRequest, in Kubernetes JSON form
        namespace:  the Namespace the request lives in, in Kubernetes JSON form

    so a rule can test e.g. ``input.namespace.metadata.labels.env``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    object: CertificateRequest
    namespace: Namespace

    def to_document(self) -> dict[str, Any]:
        """Build the JSON-ready document passed as evaluator input."""
        return {
            "object": to_wire(self.object),
            "namespace": to_wire(self.namespace),
        }


class PolicyDecision(BaseModel):
    """
    Result of evaluating a request against the policy.

    Attributes:
        allowed: Whether the policy allowed the request
        reason: Human-readable explanation of the decision
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    allowed: bool = Field(..., description="Whether the policy allowed the request")
    reason: str = Field(..., description="Human-readable explanation of the decision")

    @classmethod
    def allow(cls, reason: str) -> "PolicyDecision":
        """Create an ALLOW decision."""
        return cls(allowed=True, reason=reason)

    @classmethod
    def deny(cls, reason: str) -> "PolicyDecision":
        """Create a not-allowed decision."""
        return cls(allowed=False, reason=reason)


# =============================================================================
# Events
# =============================================================================


class Event(BaseModel):
    """
    A notification about a request.

    Attributes:
        involved: Key of the request the event is about
        uid: UID of the request, if known
        severity: Normal or Warning
        reason: Short reason code, e.g. "Approval"
        message: Human-readable message
        timestamp: When the event was emitted
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    involved: ObjectKey
    uid: str | None = None
    severity: EventSeverity
    reason: str
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
