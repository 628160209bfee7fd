"""
Approval transition.

Writes the Approved condition onto a request the policy allowed. The
write is a condition merge guarded by the store: it never lands on a
request that was Approved or Denied while the policy was being evaluated.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from certapprover.conditions import approved_condition
from certapprover.errors import AlreadyDecidedError, PersistFailedError, StoreError
from certapprover.events import (
    MESSAGE_APPROVED,
    MESSAGE_PERSIST_FAILED,
    REASON_APPROVAL,
    EventRecorder,
)
from certapprover.schema import CertificateRequest, EventSeverity
from certapprover.store.base import ResourceStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Approver:
    """
    Applies the approval and announces the outcome.

    Attributes:
        store: Where the status patch is written
        recorder: Where approval events go
        clock: Source of the transition time
    """

    def __init__(
        self,
        store: ResourceStore,
        recorder: EventRecorder,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.clock = clock

    def approve(self, request: CertificateRequest) -> CertificateRequest:
        """
        Record approval of a request allowed by policy.

        Returns:
            The request as stored after the patch

        Raises:
            AlreadyDecidedError: The request was decided by someone else in
                the meantime. Nothing was written and no event is emitted.
            PersistFailedError: The store rejected the patch. A Warning
                event has been emitted before raising.
        """
        condition = approved_condition(self.clock())

        try:
            updated = self.store.patch_status(request.key, [condition])
        except AlreadyDecidedError:
            logger.info("certificate request %s was decided concurrently, not approving", request.key)
            raise
        except StoreError as e:
            logger.error("unable to approve certificate request %s: %s", request.key, e.message)
            self.recorder.record(request, EventSeverity.WARNING, REASON_APPROVAL, MESSAGE_PERSIST_FAILED)
            raise PersistFailedError(key=str(request.key), underlying_error=e.message) from e

        self.recorder.record(request, EventSeverity.NORMAL, REASON_APPROVAL, MESSAGE_APPROVED)
        return updated
