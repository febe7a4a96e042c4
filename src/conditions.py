"""
Condition helpers and the child readiness aggregator.

Conditions live on the record itself as an ordered list, unique by type.
The aggregator is a pure function of the children it is handed: it keeps
no memory between calls, so callers must pass a fresh snapshot.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Sequence

from models import Condition

# Condition types
READY_CONDITION = "Ready"
MACHINES_READY_CONDITION = "MachinesReady"
MACHINES_CREATED_CONDITION = "MachinesCreated"
RESIZED_CONDITION = "Resized"

# Reasons
SCALING_UP_REASON = "ScalingUp"
SCALING_DOWN_REASON = "ScalingDown"
DELETING_REASON = "Deleting"
MACHINES_NOT_READY_REASON = "MachinesNotReady"
INFRASTRUCTURE_TEMPLATE_CLONING_FAILED_REASON = "InfrastructureTemplateCloningFailed"
BOOTSTRAP_TEMPLATE_CLONING_FAILED_REASON = "BootstrapTemplateCloningFailed"
MACHINE_CREATION_FAILED_REASON = "MachineCreationFailed"

# Severities, most severe first
SEVERITY_ERROR = "Error"
SEVERITY_WARNING = "Warning"
SEVERITY_INFO = "Info"
SEVERITY_NONE = ""

_SEVERITY_RANK = {SEVERITY_ERROR: 3, SEVERITY_WARNING: 2, SEVERITY_INFO: 1}

# Not-ready children named in an aggregate message before truncating
MAX_NAMED_CHILDREN = 5


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get(record: Any, condition_type: str) -> Optional[Condition]:
    """Return the condition of the given type, if the record carries one."""
    for condition in record.conditions:
        if condition.type == condition_type:
            return condition
    return None


def has(record: Any, condition_type: str) -> bool:
    return get(record, condition_type) is not None


def is_true(record: Any, condition_type: str) -> bool:
    condition = get(record, condition_type)
    return condition is not None and condition.status == "True"


def set_condition(record: Any, condition: Condition) -> None:
    """
    Add or replace a condition on the record.

    The last transition time only moves when the status actually changes,
    so repeated reconciles of an unchanged state leave the record stable.
    """
    existing = get(record, condition.type)
    if existing is not None and existing.status == condition.status:
        condition.last_transition_time = existing.last_transition_time
    elif condition.last_transition_time is None:
        condition.last_transition_time = _now()

    for index, current in enumerate(record.conditions):
        if current.type == condition.type:
            record.conditions[index] = condition
            return
    record.conditions.append(condition)


def mark_true(record: Any, condition_type: str) -> None:
    set_condition(record, Condition(type=condition_type, status="True"))


def mark_false(
    record: Any,
    condition_type: str,
    reason: str,
    severity: str,
    message: str = "",
) -> None:
    set_condition(
        record,
        Condition(
            type=condition_type,
            status="False",
            reason=reason,
            message=message,
            severity=severity,
        ),
    )


def _child_reason(child: Any) -> Optional[Condition]:
    for condition in getattr(child, "conditions", []) or []:
        if condition.type == READY_CONDITION and condition.status != "True":
            return condition
    return None


def aggregate(
    children: Sequence[Any],
    condition_type: str,
    source_kind: str = "Machine",
) -> Optional[Condition]:
    """
    Reduce child readiness into a single condition.

    Args:
        children: Records exposing ``name``, ``ready`` and ``conditions``.
        condition_type: Type of the resulting condition.
        source_kind: Kind used when naming not-ready children.

    Returns:
        True when every child is ready, False with the reason of the most
        severe not-ready child otherwise, or None for an empty set.
    """
    if not children:
        return None

    not_ready = [child for child in children if not child.ready]
    if not not_ready:
        return Condition(type=condition_type, status="True")

    worst: Optional[Condition] = None
    for child in not_ready:
        child_condition = _child_reason(child)
        if child_condition is None:
            continue
        if worst is None or _SEVERITY_RANK.get(
            child_condition.severity, 0
        ) > _SEVERITY_RANK.get(worst.severity, 0):
            worst = child_condition

    reason = MACHINES_NOT_READY_REASON
    severity = SEVERITY_INFO
    if worst is not None:
        reason = worst.reason or reason
        severity = worst.severity or severity

    names = [f"{source_kind}/{child.name}" for child in not_ready[:MAX_NAMED_CHILDREN]]
    if len(not_ready) > MAX_NAMED_CHILDREN:
        names.append(f"and {len(not_ready) - MAX_NAMED_CHILDREN} more")
    message = f"{len(not_ready)} of {len(children)} not ready: {', '.join(names)}"

    return Condition(
        type=condition_type,
        status="False",
        reason=reason,
        message=message,
        severity=severity,
    )


def set_aggregate(record: Any, condition_type: str, children: Sequence[Any]) -> None:
    """Set the aggregate condition; an empty child set leaves the record as is."""
    condition = aggregate(children, condition_type)
    if condition is not None:
        set_condition(record, condition)


def summarize(record: Any, condition_type: str, sources: Iterable[str]) -> None:
    """
    Summarize source conditions already on the record into one condition.

    The first False source wins; missing sources are ignored; with no
    source present at all the summary is not written.
    """
    present: List[Condition] = [c for c in (get(record, t) for t in sources) if c]
    if not present:
        return
    for condition in present:
        if condition.status == "False":
            mark_false(
                record,
                condition_type,
                condition.reason,
                condition.severity,
                condition.message,
            )
            return
    if all(condition.status == "True" for condition in present):
        mark_true(record, condition_type)
    else:
        set_condition(record, Condition(type=condition_type, status="Unknown"))


def snapshot(record: Any) -> List[tuple]:
    """Comparable view of the record's conditions, ignoring timestamps."""
    return [
        (c.type, c.status, c.reason, c.message, c.severity) for c in record.conditions
    ]
