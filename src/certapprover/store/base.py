"""
Resource store interface.

The controller reads requests and namespaces through this interface and
writes exactly one thing: an additive status patch on a request. Watch
streams deliver change notifications for both resource kinds.

Error contract:
    - ObjectNotFoundError: the object does not exist
    - ConflictError: the write lost against a concurrent writer too often
    - AlreadyDecidedError: the status patch found the request decided
    - StoreError: any other failure (network, server, decoding); retryable
"""

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Protocol, TypeVar

from certapprover.schema import (
    CertificateRequest,
    Condition,
    Namespace,
    ObjectKey,
)

T = TypeVar("T", CertificateRequest, Namespace)


class WatchEventType(str, Enum):
    """Type of a watch notification."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent(Generic[T]):
    """
    A single change notification.

    Attributes:
        type: What happened to the object
        object: The object as of the change
    """

    type: WatchEventType
    object: T


class ResourceStore(Protocol):
    """Operations the controller needs from the resource store."""

    def get_request(self, key: ObjectKey) -> CertificateRequest:
        """Fetch a request. Raises ObjectNotFoundError or StoreError."""
        ...

    def get_namespace(self, name: str) -> Namespace:
        """Fetch a namespace. Raises ObjectNotFoundError or StoreError."""
        ...

    def list_requests(self, namespace: str) -> list[CertificateRequest]:
        """List all requests in a namespace. Raises StoreError."""
        ...

    def patch_status(
        self,
        key: ObjectKey,
        conditions: Sequence[Condition],
    ) -> CertificateRequest:
        """
        Merge conditions into the request status by condition type.

        Unrelated conditions and status fields written concurrently by
        other actors must survive. A request that is already Approved or
        Denied when the write is applied is left untouched and
        AlreadyDecidedError is raised. Raises ObjectNotFoundError,
        ConflictError or StoreError otherwise.
        """
        ...

    def watch_requests(self) -> Iterator[WatchEvent[CertificateRequest]]:
        """Stream request changes until the store is closed."""
        ...

    def watch_namespaces(self) -> Iterator[WatchEvent[Namespace]]:
        """Stream namespace changes until the store is closed."""
        ...

    def close(self) -> None:
        """Release connections and end all watch streams."""
        ...
