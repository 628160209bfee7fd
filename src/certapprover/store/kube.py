"""
Kubernetes API resource store.

Talks to the Kubernetes REST API directly over httpx. Only the handful of
endpoints the approval controller needs are covered:

    GET   /apis/cert-manager.io/v1/namespaces/{ns}/certificaterequests/{name}
    GET   /apis/cert-manager.io/v1/namespaces/{ns}/certificaterequests
    PATCH /apis/cert-manager.io/v1/namespaces/{ns}/certificaterequests/{name}/status
    GET   /api/v1/namespaces/{name}
    GET   /apis/cert-manager.io/v1/certificaterequests?watch=true
    GET   /api/v1/namespaces?watch=true

Status patches:
    CRDs do not accept strategic merge patches, so the condition merge is
    done client side: read the request, merge conditions by type, and send
    a JSON merge patch that carries the observed resourceVersion. The API
    server rejects the write with 409 if anything changed in between, in
    which case the cycle is repeated up to ``max_conflict_retries`` times.
"""

import json
import logging
import os
import ssl
import threading
from collections.abc import Callable, Iterator, Sequence
from typing import Any

import httpx

from certapprover.conditions import is_decided, merge_conditions
from certapprover.config import KubeConfig
from certapprover.errors import AlreadyDecidedError, ConflictError, ObjectNotFoundError, StoreError
from certapprover.schema import CertificateRequest, Condition, Namespace, ObjectKey, to_wire
from certapprover.store.base import WatchEvent, WatchEventType

logger = logging.getLogger(__name__)

CERT_MANAGER_API = "/apis/cert-manager.io/v1"
CORE_API = "/api/v1"
MERGE_PATCH = "application/merge-patch+json"

_REQUESTS = "certificaterequests"
_NAMESPACES = "namespaces"

# Delay between watch reconnects after a transport failure
WATCH_RETRY_SECONDS = 2.0


def resolve_api_url(config: KubeConfig) -> str:
    """Return the configured API URL or discover the in-cluster one."""
    if config.api_url:
        return config.api_url.rstrip("/")
    host = os.environ.get("KUBERNETES_SERVICE_HOST")
    port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
    if not host:
        msg = "No Kubernetes API URL configured and not running in a cluster"
        raise ValueError(msg)
    if ":" in host:
        host = f"[{host}]"
    return f"https://{host}:{port}"


class KubeStore:
    """
    ResourceStore backed by the Kubernetes API.

    Usage:
        with KubeStore(config) as store:
            request = store.get_request(ObjectKey(namespace="prod", name="web"))

    Attributes:
        config: Connection settings
        base_url: Resolved API server URL
    """

    def __init__(
        self,
        config: KubeConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            config: Connection settings. Defaults to in-cluster settings.
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.config = config or KubeConfig()
        self.base_url = resolve_api_url(self.config)
        self._transport = transport
        self._client: httpx.Client | None = None
        self._client_lock = threading.Lock()
        self._closed = threading.Event()

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(
                    base_url=self.base_url,
                    timeout=self.config.timeout_seconds,
                    headers=self._auth_headers(),
                    verify=self._verify(),
                    transport=self._transport,
                )
            return self._client

    def _auth_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        token_path = self.config.token_path
        if token_path is not None and token_path.is_file():
            headers["Authorization"] = f"Bearer {token_path.read_text().strip()}"
        return headers

    def _verify(self) -> ssl.SSLContext | bool:
        if not self.config.verify_tls:
            return False
        ca_path = self.config.ca_path
        if ca_path is not None and ca_path.is_file():
            return ssl.create_default_context(cafile=str(ca_path))
        return True

    @property
    def client(self) -> httpx.Client:
        """The authenticated API client, shared with the event recorder."""
        return self._get_client()

    def close(self) -> None:
        """Close the HTTP client and end watch streams."""
        self._closed.set()
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def __enter__(self) -> "KubeStore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # =========================================================================
    # Reads
    # =========================================================================

    def get_request(self, key: ObjectKey) -> CertificateRequest:
        data = self._request("GET", _request_path(key), operation="get", resource=_REQUESTS, key=str(key))
        return CertificateRequest.model_validate(data)

    def get_namespace(self, name: str) -> Namespace:
        data = self._request(
            "GET", f"{CORE_API}/namespaces/{name}", operation="get", resource=_NAMESPACES, key=name
        )
        return Namespace.model_validate(data)

    def list_requests(self, namespace: str) -> list[CertificateRequest]:
        data = self._request(
            "GET",
            f"{CERT_MANAGER_API}/namespaces/{namespace}/{_REQUESTS}",
            operation="list",
            resource=_REQUESTS,
            key=namespace,
        )
        return [CertificateRequest.model_validate(item) for item in data.get("items") or []]

    # =========================================================================
    # Status patch
    # =========================================================================

    def patch_status(
        self,
        key: ObjectKey,
        conditions: Sequence[Condition],
    ) -> CertificateRequest:
        """
        Merge conditions into the request status with optimistic concurrency.

        Every attempt re-reads the request and sends its resourceVersion, so
        the decision check below holds for the version the patch applies to.

        Raises:
            ObjectNotFoundError: The request no longer exists
            AlreadyDecidedError: The request is Approved or Denied already
            ConflictError: Every attempt lost against a concurrent writer
            StoreError: Any other API failure
        """
        attempts = self.config.max_conflict_retries
        for attempt in range(1, attempts + 1):
            current = self.get_request(key)
            if is_decided(current.conditions):
                raise AlreadyDecidedError(operation="patch", resource=_REQUESTS, key=str(key))
            merged = merge_conditions(current.conditions, conditions)
            body = {
                "metadata": {"resourceVersion": current.metadata.resource_version},
                "status": {"conditions": [to_wire(c) for c in merged]},
            }
            try:
                data = self._request(
                    "PATCH",
                    f"{_request_path(key)}/status",
                    operation="patch",
                    resource=_REQUESTS,
                    key=str(key),
                    content=json.dumps(body),
                    headers={"Content-Type": MERGE_PATCH},
                )
            except ConflictError:
                logger.debug("status patch conflict on %s (attempt %d)", key, attempt)
                continue
            return CertificateRequest.model_validate(data)

        raise ConflictError(operation="patch", resource=_REQUESTS, key=str(key), attempts=attempts)

    # =========================================================================
    # Watches
    # =========================================================================

    def watch_requests(self) -> Iterator[WatchEvent[CertificateRequest]]:
        return self._watch(f"{CERT_MANAGER_API}/{_REQUESTS}", CertificateRequest.model_validate)

    def watch_namespaces(self) -> Iterator[WatchEvent[Namespace]]:
        return self._watch(f"{CORE_API}/{_NAMESPACES}", Namespace.model_validate)

    def _watch(self, path: str, parse: Callable[[Any], Any]) -> Iterator[WatchEvent]:
        """
        Stream watch events, reconnecting until the store is closed.

        A watch started without a resourceVersion makes the API server send
        an ADDED event for every existing object first, which is how the
        controller sees requests created while it was down. After a 410
        Gone the watch restarts that way.
        """
        resource_version = ""
        while not self._closed.is_set():
            params: dict[str, Any] = {
                "watch": "true",
                "allowWatchBookmarks": "true",
                "timeoutSeconds": self.config.watch_timeout_seconds,
            }
            if resource_version:
                params["resourceVersion"] = resource_version

            try:
                client = self._get_client()
                with client.stream("GET", path, params=params, timeout=httpx.Timeout(None)) as response:
                    if response.status_code == 410:
                        resource_version = ""
                        continue
                    if response.status_code != 200:
                        response.read()
                        raise StoreError(
                            operation="watch",
                            resource=path,
                            underlying_error=f"HTTP {response.status_code}: {response.text}",
                        )
                    for line in response.iter_lines():
                        if not line:
                            continue
                        event = json.loads(line)
                        event_type = event.get("type")
                        obj = event.get("object") or {}
                        if event_type == "ERROR":
                            if obj.get("code") == 410:
                                resource_version = ""
                            break
                        resource_version = (obj.get("metadata") or {}).get("resourceVersion", resource_version)
                        if event_type == "BOOKMARK":
                            continue
                        yield WatchEvent(WatchEventType(event_type), parse(obj))
            except (httpx.HTTPError, httpx.StreamError, StoreError, ValueError) as e:
                if self._closed.is_set():
                    return
                logger.warning("watch on %s interrupted: %s", path, e)
                self._closed.wait(WATCH_RETRY_SECONDS)

    # =========================================================================
    # Internals
    # =========================================================================

    def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        resource: str,
        key: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Send one API request and map failures onto store errors."""
        try:
            response = self._get_client().request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise StoreError(operation=operation, resource=resource, underlying_error=str(e)) from e

        if response.status_code == 404:
            raise ObjectNotFoundError(operation=operation, resource=resource, key=key)
        if response.status_code == 409:
            raise ConflictError(operation=operation, resource=resource, key=key, attempts=1)
        if response.status_code >= 300:
            raise StoreError(
                operation=operation,
                resource=resource,
                underlying_error=f"HTTP {response.status_code}: {response.text[:500]}",
            )

        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise StoreError(
                operation=operation,
                resource=resource,
                underlying_error=f"Invalid JSON from API server: {e}",
            ) from e


def _request_path(key: ObjectKey) -> str:
    return f"{CERT_MANAGER_API}/namespaces/{key.namespace}/{_REQUESTS}/{key.name}"
