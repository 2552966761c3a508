"""In-process hub: capability storage and automation registries.

A :class:`TagSession` never talks to a hub directly; it receives one
:class:`DeviceContext` (a capability store plus an automation registry) at
construction. :class:`LocalHub` creates those contexts and fans automation
triggers out to subscribers such as the ``/events`` websocket.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from keytag import const
from keytag.errors import CapabilityWriteFailure, UnknownDevice

logger = logging.getLogger(__name__)

CapabilityListener = Callable[[Any], Awaitable[None]]
ActionHandler = Callable[[], Awaitable[None]]
TriggerSink = Callable[["TriggerEvent"], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class TriggerEvent:
    device: str
    trigger: str
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    )

    def to_dict(self) -> Dict[str, str]:
        return {"device": self.device, "trigger": self.trigger, "timestamp": self.timestamp}


class CapabilityStore:
    """Typed capability values for one device, with set listeners.

    ``set_value`` is the device-side write (sensor readings, alarms).
    ``request_value`` is the user/automation-side write: it runs the
    registered listeners first and only stores the value if they all succeed.
    """

    def __init__(
        self,
        capabilities: Mapping[str, type],
        *,
        on_change: Optional[Callable[[str, Any], None]] = None,
    ) -> None:
        self._types = dict(capabilities)
        self._values: Dict[str, Any] = {name: None for name in self._types}
        self._listeners: Dict[str, List[CapabilityListener]] = {}
        self._on_change = on_change

    @property
    def capabilities(self) -> tuple[str, ...]:
        return tuple(self._types)

    def get(self, name: str) -> Any:
        self._require(name)
        return self._values[name]

    def values(self) -> Dict[str, Any]:
        return dict(self._values)

    async def set_value(self, name: str, value: Any) -> None:
        self._require(name)
        expected = self._types[name]
        # bool is an int subclass; keep the two apart.
        if value is not None and (
            not isinstance(value, expected) or (expected is int and isinstance(value, bool))
        ):
            raise CapabilityWriteFailure(
                f"{name} expects {expected.__name__}, got {type(value).__name__}"
            )
        self._values[name] = value
        if self._on_change is not None:
            self._on_change(name, value)

    def register_listener(self, name: str, listener: CapabilityListener) -> None:
        self._require(name)
        self._listeners.setdefault(name, []).append(listener)

    def listener_count(self, name: str) -> int:
        return len(self._listeners.get(name, ()))

    async def request_value(self, name: str, value: Any) -> None:
        self._require(name)
        listeners = self._listeners.get(name)
        if not listeners:
            raise CapabilityWriteFailure(f"no listener registered for {name}")
        for listener in list(listeners):
            await listener(value)
        await self.set_value(name, value)

    def _require(self, name: str) -> None:
        if name not in self._types:
            raise CapabilityWriteFailure(f"unknown capability {name!r}")


class AutomationRegistry:
    """Triggers a device can fire and actions automations can run on it."""

    def __init__(
        self,
        device: str,
        *,
        triggers: Iterable[str] = const.TRIGGERS,
        actions: Iterable[str] = const.ACTIONS,
        sink: Optional[TriggerSink] = None,
    ) -> None:
        self.device = device
        self._triggers = frozenset(triggers)
        self._actions = frozenset(actions)
        self._handlers: Dict[str, List[ActionHandler]] = {}
        self._sink = sink

    async def trigger(self, name: str) -> None:
        if name not in self._triggers:
            raise ValueError(f"unknown trigger {name!r}")
        logger.debug("Trigger %s fired for %s", name, self.device)
        if self._sink is not None:
            await self._sink(TriggerEvent(device=self.device, trigger=name))

    def register_action(self, name: str, handler: ActionHandler) -> None:
        if name not in self._actions:
            raise ValueError(f"unknown action {name!r}")
        self._handlers.setdefault(name, []).append(handler)

    def handler_count(self, name: str) -> int:
        return len(self._handlers.get(name, ()))

    async def run_action(self, name: str) -> bool:
        if name not in self._actions:
            raise ValueError(f"unknown action {name!r}")
        handlers = self._handlers.get(name)
        if not handlers:
            return False
        for handler in list(handlers):
            await handler()
        return True


@dataclass(slots=True)
class DeviceContext:
    device: str
    capabilities: CapabilityStore
    automation: AutomationRegistry


class LocalHub:
    """Owns device contexts and distributes trigger events to subscribers."""

    def __init__(self) -> None:
        self._devices: Dict[str, DeviceContext] = {}
        self._subscribers: List[asyncio.Queue[TriggerEvent]] = []

    def add_device(self, device: str) -> DeviceContext:
        existing = self._devices.get(device)
        if existing is not None:
            return existing
        context = DeviceContext(
            device=device,
            capabilities=CapabilityStore(
                const.CAPABILITIES,
                on_change=lambda name, value: logger.debug("%s %s -> %r", device, name, value),
            ),
            automation=AutomationRegistry(device, sink=self._publish),
        )
        self._devices[device] = context
        return context

    def remove_device(self, device: str) -> None:
        self._devices.pop(device, None)

    def device(self, device: str) -> DeviceContext:
        try:
            return self._devices[device]
        except KeyError:
            raise UnknownDevice(device) from None

    def devices(self) -> list[str]:
        return list(self._devices)

    def subscribe(self, maxsize: int = 100) -> asyncio.Queue[TriggerEvent]:
        queue: asyncio.Queue[TriggerEvent] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[TriggerEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def _publish(self, event: TriggerEvent) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping %s event for a slow subscriber", event.trigger)


__all__ = [
    "ActionHandler",
    "AutomationRegistry",
    "CapabilityListener",
    "CapabilityStore",
    "DeviceContext",
    "LocalHub",
    "TriggerEvent",
]
