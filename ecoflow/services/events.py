"""
In-process domain event bus.

The workflow publishes after its transaction commits, so subscribers only
ever see durable state.  A failing subscriber is logged and skipped; it can
never undo or block the operation that emitted the event.

Events:
    eco.created          version 1 written
    eco.version_created  a new version superseded the previous latest
    eco.status_changed   status moved (in place or via a new version)
    eco.deleted          whole chain removed
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

ECO_CREATED = "eco.created"
ECO_VERSION_CREATED = "eco.version_created"
ECO_STATUS_CHANGED = "eco.status_changed"
ECO_DELETED = "eco.deleted"

WILDCARD = "*"


@dataclass(frozen=True)
class DomainEvent:
    name: str
    chain_root_id: str
    eco_id: str | None
    actor_id: str
    payload: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[[DomainEvent], None]]] = defaultdict(list)

    def subscribe(self, name: str, handler: Callable[[DomainEvent], None]) -> None:
        """Register *handler* for event *name* (or ``"*"`` for every event)."""
        self._handlers[name].append(handler)

    def unsubscribe(self, name: str, handler: Callable[[DomainEvent], None]) -> None:
        try:
            self._handlers[name].remove(handler)
        except ValueError:
            pass

    def publish(self, event: DomainEvent) -> int:
        """Deliver *event*; returns how many handlers ran without raising."""
        delivered = 0
        for handler in [*self._handlers.get(event.name, []), *self._handlers.get(WILDCARD, [])]:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Event handler failed for %s", event.name,
                    extra={"chain_id": event.chain_root_id, "eco_id": event.eco_id},
                )
        return delivered
