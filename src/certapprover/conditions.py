"""
Status condition helpers.

A request is *decided* once it carries an Approved or Denied condition
whose status is "True". Decided requests are never evaluated again.

The approval itself is written as an additive patch: a list of conditions
merged into the stored list by condition type (add when absent, replace when
present). Conditions of other types are left exactly as they were.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime

from certapprover.schema import (
    CONDITION_APPROVED,
    CONDITION_DENIED,
    Condition,
    ConditionStatus,
)

APPROVAL_REASON = "certapprover"
APPROVAL_MESSAGE = "CertificateRequest has been approved by certapprover"

_DECIDING_TYPES = frozenset({CONDITION_APPROVED, CONDITION_DENIED})


def is_decided(conditions: Iterable[Condition] | None) -> bool:
    """Return True if any Approved or Denied condition is "True"."""
    if not conditions:
        return False
    return any(c.is_true and c.type in _DECIDING_TYPES for c in conditions)


def approved_condition(now: datetime) -> Condition:
    """
    Build the condition recording an approval.

    The transition time is truncated to whole seconds, the precision the
    Kubernetes API stores.
    """
    return Condition(
        type=CONDITION_APPROVED,
        status=ConditionStatus.TRUE,
        reason=APPROVAL_REASON,
        message=APPROVAL_MESSAGE,
        last_transition_time=now.replace(microsecond=0),
    )


def merge_conditions(
    existing: Sequence[Condition],
    patch: Sequence[Condition],
) -> list[Condition]:
    """
    Merge patch conditions into an existing list, keyed by type.

    Order of existing conditions is kept; new types are appended. When a
    patched condition has the same status as the one it replaces, the
    existing transition time is kept, so re-applying an identical approval
    changes nothing.
    """
    merged = list(existing)
    index = {c.type: i for i, c in enumerate(merged)}

    for cond in patch:
        i = index.get(cond.type)
        if i is None:
            index[cond.type] = len(merged)
            merged.append(cond)
            continue

        current = merged[i]
        if current.status == cond.status and current.last_transition_time is not None:
            cond = cond.model_copy(update={"last_transition_time": current.last_transition_time})
        merged[i] = cond

    return merged
