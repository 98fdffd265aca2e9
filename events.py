from typing import Callable, Dict, List, NamedTuple
from datetime import datetime, timezone

__all__ = ["RECURRENCE_CHANGED", "EXPENSE_REMOVED", "Event", "EventBus"]


class Event(NamedTuple):
    name: str
    ts: str
    payload: dict


class EventBus:
    """Synchronous in-process publish/subscribe.

    Handlers run in the publisher's thread, in subscription order, and
    exceptions propagate to the publisher.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[[Event, dict], None]]] = {}

    def subscribe(self, name: str, handler: Callable[[Event, dict], None]) -> None:
        if name not in self._subscribers:
            self._subscribers[name] = []
        self._subscribers[name].append(handler)

    def publish(self, name: str, payload: dict) -> int:
        if name not in self._subscribers:
            return 0

        event = Event(
            name=name,
            ts=datetime.now(timezone.utc).isoformat(),
            payload=payload,
        )
        for handler in self._subscribers[name]:
            handler(event, payload)
        return len(self._subscribers[name])


# payload: {"session": Session, "expense": Expense}
RECURRENCE_CHANGED = "RECURRENCE_CHANGED"
# payload: {"session": Session, "expense_id": int}
EXPENSE_REMOVED = "EXPENSE_REMOVED"
