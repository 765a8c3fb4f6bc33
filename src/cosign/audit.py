"""Transition events for an external audit log.

The core only says what changed. Storing or formatting audit rows belongs to
whatever sink is plugged in.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, Protocol

log = logging.getLogger("cosign.audit")


class Entity(StrEnum):
    CONTRACT = "contract"
    BATCH    = "batch"
    DETAIL   = "detail"


@dataclass(frozen=True, slots=True)
class TransitionEvent:
    entity: Entity
    entity_id: str
    before: str | None
    after: str
    error: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)
    at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["entity"] = str(self.entity)
        return d


class AuditSink(Protocol):
    async def emit(self, event: TransitionEvent) -> None: ...


class LogAuditSink:
    async def emit(self, event: TransitionEvent) -> None:
        log.info(
            "%s %s %s -> %s%s",
            event.entity, event.entity_id, event.before, event.after,
            f" error={event.error}" if event.error else "",
            extra={"audit": event.to_dict()},
        )


class MemoryAuditSink:
    """Keeps events in a list. Used by tests and local tooling."""

    def __init__(self) -> None:
        self.events: list[TransitionEvent] = []

    async def emit(self, event: TransitionEvent) -> None:
        self.events.append(event)

    def for_entity(self, entity: Entity, entity_id: str) -> list[TransitionEvent]:
        return [e for e in self.events if e.entity == entity and e.entity_id == entity_id]
