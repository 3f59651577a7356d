"""
Event System Module

In-process publish/subscribe for ledger domain events. Collaborating
subsystems (order fulfilment, settlement, task billing) subscribe here instead
of polling the ledger tables. Events are published only after the unit of work
that produced them has committed.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
import uuid

from .logging_config import get_logger


class LedgerEvent(Enum):
    """Domain events emitted by the ledger"""

    # Account events
    ACCOUNT_CREATED = "account.created"
    ACCOUNT_SUSPENDED = "account.suspended"
    ACCOUNT_REOPENED = "account.reopened"
    ACCOUNT_CLOSED = "account.closed"

    # Transaction events
    TRANSACTION_OPENED = "transaction.opened"
    TRANSACTION_POSTED = "transaction.posted"
    TRANSACTION_VOIDED = "transaction.voided"
    TRANSACTION_REVERSED = "transaction.reversed"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: LedgerEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[LedgerEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = get_logger("ledger.events")

    def subscribe(self, event_type: LedgerEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: LedgerEvent, handler: Callable) -> None:
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(
                    f"Handler {getattr(handler, '__name__', repr(handler))} was not subscribed to {event_type.value}"
                )

    def publish(self, event: EventPayload) -> None:
        """
        Publish event to all subscribers.

        Handler failures are logged and never propagate: the ledger change the
        event describes is already committed.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                self.logger.exception(
                    f"Error in event handler {getattr(handler, '__name__', repr(handler))} "
                    f"for {event.event_type.value}"
                )

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[LedgerEvent] = None) -> int:
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)


def create_account_event(event_type: LedgerEvent, account) -> EventPayload:
    """Create an account-related event"""
    return EventPayload(
        event_type=event_type,
        entity_type="account",
        entity_id=account.id,
        data={
            "code": account.code,
            "owner_user_id": account.owner.user_id,
            "owner_org_id": account.owner.org_id,
            "account_type": account.account_type.value,
            "currency": account.currency.code,
            "status": account.status.value
        }
    )


def create_transaction_event(event_type: LedgerEvent, transaction) -> EventPayload:
    """Create a ledger-transaction-related event"""
    return EventPayload(
        event_type=event_type,
        entity_type="ledger_transaction",
        entity_id=transaction.id,
        data={
            "organization_id": transaction.organization_id,
            "reference_type": transaction.reference.reference_type.value,
            "reference_id": transaction.reference.reference_id,
            "status": transaction.status.value,
            "reverses": transaction.reverses,
            "reversed_by": transaction.reversed_by
        }
    )
