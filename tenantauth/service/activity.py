from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from tenantauth.logging import get_logger
from tenantauth.storage.models import utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class ActivityEvent:
    action: str
    tenant_id: str
    actor_id: Optional[str]
    entity_type: str = "user"
    entity_id: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


class ActivitySink(Protocol):
    def record(self, event: ActivityEvent) -> None: ...


class LogActivitySink:
    """Writes activity events to the structured log."""

    def record(self, event: ActivityEvent) -> None:
        logger.info(
            "activity",
            action=event.action,
            tenant_id=event.tenant_id,
            actor_id=event.actor_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            detail=event.detail,
        )


class MemoryActivitySink:
    """Keeps events in a list; handy for assertions."""

    def __init__(self) -> None:
        self.events: List[ActivityEvent] = []

    def record(self, event: ActivityEvent) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [e.action for e in self.events]
