"""
Messaging Module

Two channels connect the services:

* a command bus: request/response calls addressed by topic string, every one
  bounded by a timeout and carried in a ``{ok, data | error}`` envelope;
* an event bus: fire-and-forget domain events for anyone interested.

Both have abstract interfaces with in-process implementations.
"""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError as PayloadValidationError

from .errors import BankingError, CollaboratorUnavailable, error_from_code
from .logging_config import get_logger
from .storage import to_storable


class Topics(Enum):
    """Command and event topic names"""
    # Commands served by the accounts service
    ACCOUNTS_FIND_BY_NUMBER = "accounts.find_by_number"
    ACCOUNTS_FIND_BY_ID = "accounts.find_by_id"
    ACCOUNTS_ADJUST_BALANCE = "accounts.adjust_balance"
    ACCOUNTS_RECORD_MOVEMENT = "accounts.record_movement"
    ACCOUNTS_GET_RESTRICTIONS = "accounts.get_restrictions"

    # Commands served by the users service
    USERS_FIND_ONE = "users.find_one"

    # Domain events
    ACCOUNTS_CREATED = "accounts.created"
    ACCOUNTS_UPDATED = "accounts.updated"
    TRANSACTIONS_CREATED = "transactions.created"
    TRANSACTIONS_COMPLETED = "transactions.completed"
    TRANSACTIONS_FAILED = "transactions.failed"
    TRANSACTIONS_CANCELLED = "transactions.cancelled"
    TRANSACTIONS_PARTIAL_SETTLEMENT = "transactions.partial_settlement"


def _wire(value: Any) -> Any:
    """Round-trip through JSON the way a real broker would"""
    return json.loads(json.dumps(to_storable(value), default=str))


# ---------------------------------------------------------------------------
# Command bus
# ---------------------------------------------------------------------------

CommandHandler = Callable[[BaseModel], Any]


@dataclass
class _Registration:
    handler: CommandHandler
    request_model: Type[BaseModel]


class CommandBus(ABC):
    """Request/response channel between services"""

    @abstractmethod
    def register(self, topic: str, request_model: Type[BaseModel], handler: CommandHandler) -> None:
        """Serve a topic; payloads are validated against request_model before the handler runs"""
        pass

    @abstractmethod
    def request(self, topic: str, payload: BaseModel, timeout: Optional[float] = None) -> Any:
        """
        Send a command and wait for its reply

        Raises:
            CollaboratorUnavailable: On timeout, missing handler or unexpected remote failure
            BankingError: The typed error the remote handler raised
        """
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class InMemoryCommandBus(CommandBus):
    """
    In-process command bus. Handlers run on a worker pool so the caller's
    timeout applies exactly as it would across the network.
    """

    def __init__(self, default_timeout: float = 2.0, max_workers: int = 16):
        self.default_timeout = default_timeout
        self._handlers: Dict[str, _Registration] = {}
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="command-bus")
        self.logger = get_logger("banking.bus")

    def register(self, topic: str, request_model: Type[BaseModel], handler: CommandHandler) -> None:
        with self._lock:
            self._handlers[topic] = _Registration(handler=handler, request_model=request_model)

    def topics(self) -> List[str]:
        with self._lock:
            return sorted(self._handlers)

    def _dispatch(self, topic: str, raw_payload: Dict[str, Any]) -> Dict[str, Any]:
        """Server side: validate, run the handler and wrap the outcome in an envelope"""
        registration = self._handlers[topic]
        try:
            payload = registration.request_model.model_validate(raw_payload)
            result = registration.handler(payload)
            if isinstance(result, BaseModel):
                result = result.model_dump(mode="json")
            elif isinstance(result, list):
                result = [r.model_dump(mode="json") if isinstance(r, BaseModel) else r for r in result]
            return {"ok": True, "data": _wire(result)}
        except PayloadValidationError as e:
            return {"ok": False, "error": {"code": "VALIDATION_ERROR", "message": str(e)}}
        except BankingError as e:
            return {"ok": False, "error": e.to_dict()}
        except Exception:
            self.logger.exception(f"Unhandled error serving {topic}")
            return {"ok": False, "error": {
                "code": CollaboratorUnavailable.code,
                "message": f"Service error while handling {topic}"
            }}

    def request(self, topic: str, payload: BaseModel, timeout: Optional[float] = None) -> Any:
        timeout = self.default_timeout if timeout is None else timeout

        with self._lock:
            if topic not in self._handlers:
                raise CollaboratorUnavailable(f"No service is listening on {topic}")

        raw_payload = payload.model_dump(mode="json")
        future = self._executor.submit(self._dispatch, topic, raw_payload)
        try:
            envelope = future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            self.logger.warning(f"Command {topic} timed out after {timeout}s")
            raise CollaboratorUnavailable(f"collaborator timeout: {topic} did not answer within {timeout}s")

        if envelope["ok"]:
            return envelope["data"]

        error = envelope["error"]
        raise error_from_code(error["code"], error["message"])

    def close(self) -> None:
        self._executor.shutdown(wait=False)


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------

@dataclass
class EventSchema:
    """CloudEvents-inspired event schema"""
    event_id: str
    event_type: str
    timestamp: datetime
    source: str = "banking-core"
    version: str = "1.0"
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return to_storable(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventSchema':
        data = dict(data)
        if isinstance(data.get('timestamp'), str):
            data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        return cls(**data)


EventHandler = Callable[[EventSchema], None]


class EventBus(ABC):
    """Abstract event bus interface"""

    @abstractmethod
    def publish(self, topic: str, event: EventSchema, key: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def subscribe(self, topic: str, handler: EventHandler) -> None:
        pass


class InMemoryEventBus(EventBus):
    """In-memory event bus; keeps every published event for inspection"""

    def __init__(self):
        self.events: List[tuple] = []  # (topic, event, key)
        self.subscribers: Dict[str, List[EventHandler]] = {}
        self._lock = threading.RLock()

    def publish(self, topic: str, event: EventSchema, key: Optional[str] = None) -> None:
        with self._lock:
            self.events.append((topic, event, key))
            handlers = list(self.subscribers.get(topic, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logging.getLogger("banking.events").error(f"Error in event handler for {topic}: {e}")

    def subscribe(self, topic: str, handler: EventHandler) -> None:
        with self._lock:
            self.subscribers.setdefault(topic, []).append(handler)

    def get_events(self, topic: Optional[str] = None) -> List[tuple]:
        with self._lock:
            if topic:
                return [(t, e, k) for t, e, k in self.events if t == topic]
            return list(self.events)

    def clear_events(self) -> None:
        with self._lock:
            self.events.clear()


class LogEventBus(InMemoryEventBus):
    """Event bus that logs every event (for development) and keeps no history"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        super().__init__()
        self.logger = logger or get_logger("banking.events")

    def publish(self, topic: str, event: EventSchema, key: Optional[str] = None) -> None:
        self.logger.info(f"EVENT: {topic} - {event.event_type} - {event.entity_type}:{event.entity_id}")
        super().publish(topic, event, key)
        with self._lock:
            self.events.clear()


class EventPublisher:
    """High-level publisher for account and transaction domain events"""

    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus

    def _publish(self, topic: Topics, entity_type: str, entity_id: str, data: Dict[str, Any]) -> None:
        event = EventSchema(
            event_id=str(uuid.uuid4()),
            event_type=topic.value,
            timestamp=datetime.now(timezone.utc),
            entity_type=entity_type,
            entity_id=entity_id,
            data=to_storable(data)
        )
        self.event_bus.publish(topic.value, event, key=entity_id)

    def account_created(self, account) -> None:
        self._publish(Topics.ACCOUNTS_CREATED, "account", account.id, {
            'account_number': account.account_number,
            'owner_id': account.owner_id,
            'account_type': account.account_type
        })

    def account_updated(self, account) -> None:
        self._publish(Topics.ACCOUNTS_UPDATED, "account", account.id, {
            'account_number': account.account_number,
            'status': account.status,
            'balance': account.balance
        })

    def transaction_created(self, transaction) -> None:
        self._publish(Topics.TRANSACTIONS_CREATED, "transaction", transaction.id, {
            'transaction_number': transaction.transaction_number,
            'transaction_type': transaction.transaction_type,
            'amount': transaction.amount,
            'state': transaction.state,
            'requires_authentication': transaction.requires_authentication
        })

    def transaction_completed(self, transaction) -> None:
        self._publish(Topics.TRANSACTIONS_COMPLETED, "transaction", transaction.id, {
            'transaction_number': transaction.transaction_number,
            'amount': transaction.amount,
            'origin_account_id': transaction.origin_account_id,
            'destination_account_id': transaction.destination_account_id
        })

    def transaction_failed(self, transaction) -> None:
        self._publish(Topics.TRANSACTIONS_FAILED, "transaction", transaction.id, {
            'transaction_number': transaction.transaction_number,
            'failure_reason': transaction.failure_reason
        })

    def transaction_cancelled(self, transaction) -> None:
        self._publish(Topics.TRANSACTIONS_CANCELLED, "transaction", transaction.id, {
            'transaction_number': transaction.transaction_number
        })

    def partial_settlement(self, transaction, account_id: str, error) -> None:
        """``error`` is the PartialSettlement describing the missing movement"""
        self._publish(Topics.TRANSACTIONS_PARTIAL_SETTLEMENT, "transaction", transaction.id, {
            'transaction_number': transaction.transaction_number,
            'account_id': account_id,
            'code': error.code,
            'error': error.message
        })
