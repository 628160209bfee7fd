"""Reads the facts a decision is based on: the request and its namespace."""

from certapprover.errors import ObjectNotFoundError, RequestNotFoundError, StoreError, TransientError
from certapprover.schema import CertificateRequest, Namespace, ObjectKey
from certapprover.store.base import ResourceStore


class FactGatherer:
    """
    Fetches fresh copies of a request and its namespace.

    Nothing is cached: the namespace in particular may have changed since
    the request was created, so it is read at decision time.
    """

    def __init__(self, store: ResourceStore) -> None:
        self.store = store

    def fetch_request(self, key: ObjectKey) -> CertificateRequest:
        """
        Raises:
            RequestNotFoundError: The request is gone (terminal, not retried)
            TransientError: Any other store failure
        """
        try:
            return self.store.get_request(key)
        except ObjectNotFoundError as e:
            raise RequestNotFoundError(key=str(key)) from e
        except StoreError as e:
            raise TransientError(key=str(key), underlying_error=e.message) from e

    def fetch_context(self, request: CertificateRequest) -> Namespace:
        """
        Raises:
            TransientError: The namespace is missing or unreadable
        """
        name = request.metadata.namespace or ""
        try:
            return self.store.get_namespace(name)
        except StoreError as e:
            raise TransientError(
                key=str(request.key),
                underlying_error=f"unable to get namespace {name!r}: {e.message}",
            ) from e
