"""
Event recording.

Approvals are announced with a Normal/Approval event. An approval allowed
by policy that could not be written is announced with a Warning/Approval
event so that it stands apart from an ordinary "not allowed", which emits
nothing.

Recorders:
    - MemoryRecorder: keeps events in a list (tests, dry runs)
    - LoggingRecorder: writes each event to the log
    - KubeEventRecorder: creates core/v1 Event objects in the cluster
    - FanoutRecorder: forwards to several recorders
"""

import logging
import threading
import uuid
from typing import Any, Protocol

import httpx

from certapprover.schema import CertificateRequest, Event, EventSeverity

logger = logging.getLogger(__name__)

COMPONENT = "certapprover"
REASON_APPROVAL = "Approval"
MESSAGE_APPROVED = "Accepted by policy"
MESSAGE_PERSIST_FAILED = "Unable to approve policy, even though accepted by policy"


class EventRecorder(Protocol):
    """Sink for events about requests."""

    def record(
        self,
        obj: CertificateRequest,
        severity: EventSeverity,
        reason: str,
        message: str,
    ) -> None:
        ...


def _build_event(
    obj: CertificateRequest,
    severity: EventSeverity,
    reason: str,
    message: str,
) -> Event:
    return Event(
        involved=obj.key,
        uid=obj.metadata.uid,
        severity=severity,
        reason=reason,
        message=message,
    )


class MemoryRecorder:
    """Keeps every recorded event in ``events``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[Event] = []

    def record(
        self,
        obj: CertificateRequest,
        severity: EventSeverity,
        reason: str,
        message: str,
    ) -> None:
        with self._lock:
            self.events.append(_build_event(obj, severity, reason, message))


class LoggingRecorder:
    """Writes each event to the log, at WARNING level for warnings."""

    def record(
        self,
        obj: CertificateRequest,
        severity: EventSeverity,
        reason: str,
        message: str,
    ) -> None:
        level = logging.WARNING if severity == EventSeverity.WARNING else logging.INFO
        logger.log(level, "event %s/%s on %s: %s", severity.value, reason, obj.key, message)


class FanoutRecorder:
    """Forwards each event to every wrapped recorder."""

    def __init__(self, *recorders: EventRecorder) -> None:
        self.recorders = list(recorders)

    def record(
        self,
        obj: CertificateRequest,
        severity: EventSeverity,
        reason: str,
        message: str,
    ) -> None:
        for recorder in self.recorders:
            recorder.record(obj, severity, reason, message)


class KubeEventRecorder:
    """
    Creates core/v1 Event objects through the Kubernetes API.

    Event delivery is best effort: a failed POST is logged and dropped, it
    never fails the reconciliation that produced the event.
    """

    def __init__(self, client: httpx.Client, component: str = COMPONENT) -> None:
        """
        Args:
            client: An authenticated client whose base_url is the API server
            component: Value reported as the event source
        """
        self.client = client
        self.component = component

    def record(
        self,
        obj: CertificateRequest,
        severity: EventSeverity,
        reason: str,
        message: str,
    ) -> None:
        event = _build_event(obj, severity, reason, message)
        namespace = event.involved.namespace
        body = self._to_manifest(obj, event)
        try:
            response = self.client.post(f"/api/v1/namespaces/{namespace}/events", json=body)
        except httpx.HTTPError as e:
            logger.warning("unable to record event for %s: %s", event.involved, e)
            return
        if response.status_code >= 300:
            logger.warning(
                "unable to record event for %s: HTTP %d",
                event.involved,
                response.status_code,
            )

    def _to_manifest(self, obj: CertificateRequest, event: Event) -> dict[str, Any]:
        timestamp = event.timestamp.replace(microsecond=0).isoformat().replace("+00:00", "Z")
        involved: dict[str, Any] = {
            "apiVersion": obj.api_version,
            "kind": obj.kind,
            "namespace": event.involved.namespace,
            "name": event.involved.name,
        }
        if obj.metadata.uid:
            involved["uid"] = obj.metadata.uid
        if obj.metadata.resource_version:
            involved["resourceVersion"] = obj.metadata.resource_version

        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{event.involved.name}.{uuid.uuid4().hex[:16]}",
                "namespace": event.involved.namespace,
            },
            "involvedObject": involved,
            "type": event.severity.value,
            "reason": event.reason,
            "message": event.message,
            "source": {"component": self.component},
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }
