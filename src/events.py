"""
Event Recorder - Kubernetes-style events about reconciled records.

Every mutating action the reconciler takes is reported as a Normal or
Warning event. Events are logged and persisted so ``cpctl events`` can
show what happened to a control plane and why.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Severity of an event."""

    NORMAL = "Normal"
    WARNING = "Warning"


# Event reasons
FINALIZER_ADDED = "FinalizerAdded"
FINALIZER_REMOVED = "FinalizerRemoved"
MACHINE_CREATED = "SuccessfulCreate"
MACHINE_CREATE_FAILED = "FailedCreate"
MACHINE_DELETED = "SuccessfulDelete"
MACHINE_DELETE_FAILED = "FailedDelete"


@dataclass
class Event:
    """An event about a single record."""

    namespace: str
    involved_kind: str
    involved_name: str
    event_type: EventType
    reason: str
    message: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "involved_kind": self.involved_kind,
            "involved_name": self.involved_name,
            "event_type": self.event_type.value,
            "reason": self.reason,
            "message": self.message,
            "timestamp": self.timestamp,
        }


class EventRecorder:
    """
    Records events against the store.

    Recording is best effort: a failure to persist an event is logged and
    never fails the reconcile that emitted it.
    """

    def __init__(self, db: Any, component: str = "controlplane-operator"):
        self.db = db
        self.component = component

    async def record(
        self,
        obj: Any,
        kind: str,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> Event:
        """
        Record an event about ``obj``.

        Args:
            obj: Any record exposing ``namespace`` and ``name``.
            kind: Kind of the record the event is about.
            event_type: Normal or Warning.
            reason: Short CamelCase reason.
            message: Human-readable description.

        Returns:
            The recorded event.
        """
        event = Event(
            namespace=obj.namespace,
            involved_kind=kind,
            involved_name=obj.name,
            event_type=event_type,
            reason=reason,
            message=message,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

        log = logger.warning if event_type == EventType.WARNING else logger.info
        log(f"[{self.component}] {kind} {obj.namespace}/{obj.name}: {reason}: {message}")

        try:
            await self.db.record_event(
                namespace=event.namespace,
                involved_kind=event.involved_kind,
                involved_name=event.involved_name,
                event_type=event.event_type.value,
                reason=event.reason,
                message=event.message,
            )
        except Exception as e:
            logger.error(f"Failed to record event {reason} for {obj.name}: {e}")

        return event

    async def normal(self, obj: Any, kind: str, reason: str, message: str) -> Event:
        return await self.record(obj, kind, EventType.NORMAL, reason, message)

    async def warning(self, obj: Any, kind: str, reason: str, message: str) -> Event:
        return await self.record(obj, kind, EventType.WARNING, reason, message)
