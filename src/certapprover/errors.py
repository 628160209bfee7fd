"""
Exception hierarchy for certapprover.

All certapprover exceptions inherit from ApproverError, allowing callers to
catch every controller-specific failure with a single except clause.

Exception Categories:
    - StoreError: The resource store rejected or failed an operation
    - ReconcileError: A single reconciliation attempt did not complete
    - PolicyError: Policy sources could not be loaded or compiled

Retry semantics:
    Every error carries a ``retryable`` flag. The controller loop requeues
    a request with backoff when the error of its attempt is retryable and
    drops it otherwise. Policy errors are startup-only and never retried.
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Store errors: 1xxx
ERROR_STORE_UNAVAILABLE = 1001
ERROR_STORE_NOT_FOUND = 1002
ERROR_STORE_CONFLICT = 1003
ERROR_STORE_DECIDED = 1004

# Reconcile errors: 2xxx
ERROR_REQUEST_NOT_FOUND = 2001
ERROR_TRANSIENT = 2002
ERROR_EVALUATION_FAILED = 2003
ERROR_PERSIST_FAILED = 2004
ERROR_CANCELLED = 2005

# Policy errors: 3xxx
ERROR_POLICY_LOAD = 3001
ERROR_POLICY_COMPILE = 3002
ERROR_POLICY_IN_USE = 3003


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class ApproverError(Exception):
    """
    Base exception for all certapprover errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    retryable = False

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Store Errors
# =============================================================================


@dataclass
class StoreError(ApproverError):
    """
    Raised when the resource store fails an operation.

    The bare class stands for an I/O or network class failure and is
    retryable. Subclasses narrow the meaning.

    Attributes:
        operation: The store operation that failed (e.g. "get", "patch")
        resource: Resource kind involved ("certificaterequests", "namespaces")
        underlying_error: Text of the original failure
    """

    operation: str = ""
    resource: str = ""
    underlying_error: str = ""

    retryable = True

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Store {self.operation} on {self.resource} failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORE_UNAVAILABLE
        self.context.update({
            "operation": self.operation,
            "resource": self.resource,
            "underlying_error": self.underlying_error,
        })


@dataclass
class ObjectNotFoundError(StoreError):
    """Raised when the requested object does not exist in the store."""

    key: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"{self.resource or 'object'} not found: {self.key}"
        if self.code == 0:
            self.code = ERROR_STORE_NOT_FOUND
        super().__post_init__()
        self.context["key"] = self.key


@dataclass
class ConflictError(StoreError):
    """Raised when an optimistic-concurrency write loses against a newer version."""

    key: str = ""
    attempts: int = 0

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Conflict writing {self.key} after {self.attempts} attempt(s)"
        if self.code == 0:
            self.code = ERROR_STORE_CONFLICT
        super().__post_init__()
        self.context.update({"key": self.key, "attempts": self.attempts})


@dataclass
class AlreadyDecidedError(StoreError):
    """
    Raised when a status patch finds the request already Approved or Denied.

    Nothing is written. The decision was made by someone else between the
    read the policy saw and the write, and it is final.
    """

    key: str = ""

    retryable = False

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"{self.key} was decided before the patch could be written"
        if self.code == 0:
            self.code = ERROR_STORE_DECIDED
        super().__post_init__()
        self.context["key"] = self.key


# =============================================================================
# Reconcile Errors
# =============================================================================


@dataclass
class ReconcileError(ApproverError):
    """
    Base class for failures of a single reconciliation attempt.

    These errors are scoped to one request and never affect the
    reconciliation of another.

    Attributes:
        key: "namespace/name" of the request being reconciled
    """

    key: str = ""

    def __post_init__(self) -> None:
        self.context["key"] = self.key


@dataclass
class RequestNotFoundError(ReconcileError):
    """Raised when the request vanished before it could be reconciled."""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"CertificateRequest not found: {self.key}"
        if self.code == 0:
            self.code = ERROR_REQUEST_NOT_FOUND
        super().__post_init__()


@dataclass
class TransientError(ReconcileError):
    """Raised when gathering facts failed for a reason expected to pass."""

    underlying_error: str = ""

    retryable = True

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Transient failure reconciling {self.key}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_TRANSIENT
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class EvaluationFailedError(ReconcileError):
    """
    Raised when the policy evaluator could not produce a decision.

    This is never treated as a denial, so that a broken policy does not
    silently look like a policy that said no.
    """

    underlying_error: str = ""

    retryable = True

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Policy evaluation failed for {self.key}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_EVALUATION_FAILED
        if not self.suggestion:
            self.suggestion = "Check that the policy evaluator is reachable and the policy is loaded"
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class PersistFailedError(ReconcileError):
    """Raised when an approval allowed by policy could not be written."""

    underlying_error: str = ""

    retryable = True

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Unable to persist approval for {self.key}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_PERSIST_FAILED
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class ReconcileCancelledError(ReconcileError):
    """Raised when the caller cancelled an attempt before it committed."""

    stage: str = ""

    retryable = True

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Reconciliation of {self.key} cancelled before {self.stage}"
        if self.code == 0:
            self.code = ERROR_CANCELLED
        super().__post_init__()
        self.context["stage"] = self.stage


# =============================================================================
# Policy Errors
# =============================================================================


@dataclass
class PolicyError(ApproverError):
    """Base class for policy source errors. Fatal at startup."""


@dataclass
class PolicyLoadError(PolicyError):
    """Raised when a policy file cannot be read."""

    filename: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Unable to read policy file {self.filename}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_POLICY_LOAD
        self.context.update({
            "filename": self.filename,
            "underlying_error": self.underlying_error,
        })


@dataclass
class PolicyCompileError(PolicyError):
    """Raised when the evaluator rejects the policy sources."""

    errors: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.message:
            detail = "; ".join(self.errors) if self.errors else "unknown error"
            self.message = f"Unable to compile policy: {detail}"
        if self.code == 0:
            self.code = ERROR_POLICY_COMPILE
        if not self.suggestion:
            self.suggestion = "Fix the policy sources; the controller will not start without them"
        self.context["errors"] = self.errors


@dataclass
class PolicyInUseError(PolicyError):
    """
    Raised when a dry run would share the evaluator with a live controller.

    Every certapprover program is evaluated under the same package, so a
    candidate policy uploaded next to a running controller's program would
    change that controller's decisions for as long as it stays loaded.

    Attributes:
        server: Base URL of the evaluator
        modules: Module ids already loaded there
    """

    server: str = ""
    modules: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.message:
            self.message = (
                f"OPA at {self.server} already serves a certapprover policy: "
                + ", ".join(self.modules)
            )
        if self.code == 0:
            self.code = ERROR_POLICY_IN_USE
        if not self.suggestion:
            self.suggestion = "Point --opa-url at an OPA server no controller uses"
        self.context.update({"server": self.server, "modules": self.modules})
