"""Per-request lifecycle hook registry.

Usage:

    hooks = HookRegistry()
    hooks.subscribe("submission/inserted", 10, on_inserted)
    ...
    hooks.fire("submission/inserted", insert_id, fields)

Handlers receive a single ``Payload`` describing whatever the event passed.
"""

import enum
import itertools
import logging
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


class PayloadKind(enum.Enum):
    NONE = "none"
    VALUE = "value"
    EVENT = "event"


@dataclass(frozen=True)
class Payload:
    """What an event occurrence carried: nothing, one value, or several args."""

    kind: PayloadKind = PayloadKind.NONE
    args: tuple = ()

    @classmethod
    def from_args(cls, args: tuple) -> "Payload":
        if not args:
            return cls()
        if len(args) == 1:
            return cls(PayloadKind.VALUE, tuple(args))
        return cls(PayloadKind.EVENT, tuple(args))

    @property
    def value(self):
        return self.args[0] if self.args else None

    def arg(self, index: int, types=None, default=None):
        """Positional arg, or ``default`` when missing or of the wrong type."""
        if index >= len(self.args):
            return default
        value = self.args[index]
        if value is None:
            return default
        if types is not None and not isinstance(value, types):
            return default
        return value


Handler = Callable[[Payload], None]


class HookRegistry:
    """Priority-ordered event subscriptions for a single request."""

    def __init__(self):
        self._subscribers: dict[str, list[tuple[int, int, Handler]]] = {}
        self._order = itertools.count()

    def subscribe(self, event: str, priority: int, handler: Handler) -> None:
        subs = self._subscribers.setdefault(event, [])
        subs.append((priority, next(self._order), handler))
        subs.sort(key=lambda s: (s[0], s[1]))

    def has_subscribers(self, event: str) -> bool:
        return bool(self._subscribers.get(event))

    def fire(self, event: str, *args) -> int:
        """Invoke every subscriber of ``event`` once.  Returns how many ran.

        Subscriptions added while firing apply from the next occurrence.
        """
        subs = self._subscribers.get(event)
        if not subs:
            return 0
        payload = Payload.from_args(args)
        snapshot = list(subs)
        for _, _, handler in snapshot:
            handler(payload)
        return len(snapshot)
