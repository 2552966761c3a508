"""In-memory stand-ins for the BLE transport and the scheduler."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from keytag import const
from keytag.errors import NotFound, TransportFailure
from keytag.models import to_connection_id
from keytag.transport import LinkRegistry

ADDRESS = "AA:BB:CC:DD:EE:FF"


class FakeCharacteristic:
    def __init__(self, uuid: str) -> None:
        self.uuid = uuid
        self.writes: List[bytes] = []
        self.error: Optional[Exception] = None
        self.after_write: Optional[Callable[[], Awaitable[None]]] = None

    async def write(self, data: bytes) -> None:
        if self.error is not None:
            raise self.error
        self.writes.append(bytes(data))
        if self.after_write is not None:
            await self.after_write()


class FakeService:
    def __init__(self, uuid: str, characteristics: Iterable[str]) -> None:
        self.uuid = uuid
        self.characteristics: Dict[str, FakeCharacteristic] = {
            char_uuid: FakeCharacteristic(char_uuid) for char_uuid in characteristics
        }

    def get_characteristic(self, uuid: str) -> Optional[FakeCharacteristic]:
        return self.characteristics.get(uuid)


class FakeLink:
    """A connected tag. ``missing`` drops services or characteristics by UUID."""

    def __init__(self, connection_id: str, *, missing: Iterable[str] = (), rssi: int = -55) -> None:
        missing = set(missing)
        self.connection_id = connection_id
        self.services: Dict[str, FakeService] = {}
        layout = {
            const.CONTROL_SERVICE_UUID: (const.BUTTON_CHAR_UUID, const.LINK_LOSS_CHAR_UUID),
            const.ALERT_SERVICE_UUID: (const.ALERT_LEVEL_CHAR_UUID,),
        }
        for service_uuid, chars in layout.items():
            if service_uuid in missing:
                continue
            self.services[service_uuid] = FakeService(
                service_uuid, [c for c in chars if c not in missing]
            )
        self.rssi = rssi
        self.rssi_error: Optional[Exception] = None
        self.disconnect_error: Optional[Exception] = None
        self.disconnect_calls = 0
        self.connected = True
        self._observers: List[Callable[[], Awaitable[None]]] = []
        self._late: Set[asyncio.Task[None]] = set()

    @property
    def alert(self) -> FakeCharacteristic:
        return self.services[const.ALERT_SERVICE_UUID].characteristics[const.ALERT_LEVEL_CHAR_UUID]

    @property
    def link_loss(self) -> FakeCharacteristic:
        return self.services[const.CONTROL_SERVICE_UUID].characteristics[const.LINK_LOSS_CHAR_UUID]

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    async def discover_services(self) -> List[FakeService]:
        return list(self.services.values())

    def get_service(self, uuid: str) -> Optional[FakeService]:
        return self.services.get(uuid)

    async def update_rssi(self) -> int:
        if self.rssi_error is not None:
            raise self.rssi_error
        return self.rssi

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.disconnect_error is not None:
            raise self.disconnect_error
        if self.connected:
            await self.drop()

    def once_disconnected(self, observer: Callable[[], Awaitable[None]]) -> None:
        if not self.connected:
            task = asyncio.ensure_future(observer())
            self._late.add(task)
            task.add_done_callback(self._late.discard)
            return
        self._observers.append(observer)

    async def drop(self) -> None:
        """Simulate the radio link going away."""
        self.connected = False
        observers, self._observers = self._observers, []
        for observer in observers:
            await observer()


class FakeAdvertisement:
    def __init__(
        self,
        address: str,
        *,
        local_name: Optional[str] = const.PRODUCT_NAME,
        rssi: Optional[int] = -60,
        manufacturer_data: bytes = b"",
    ) -> None:
        self.address = address
        self.local_name = local_name
        self.rssi = rssi
        self.manufacturer_data = manufacturer_data
        self.missing: Iterable[str] = ()
        self.connect_errors: List[Exception] = []
        self.links: List[FakeLink] = []
        self.configure: Optional[Callable[[FakeLink], None]] = None

    @property
    def connection_id(self) -> str:
        return to_connection_id(self.address)

    @property
    def link(self) -> FakeLink:
        return self.links[-1]

    async def connect(self) -> FakeLink:
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        link = FakeLink(self.connection_id, missing=self.missing)
        if self.configure is not None:
            self.configure(link)
        self.links.append(link)
        return link


class FakeTransport:
    def __init__(self) -> None:
        self.registry = LinkRegistry()
        self.advertisements: List[FakeAdvertisement] = []
        self.discover_error: Optional[Exception] = None
        self.discover_calls = 0
        self.find_calls = 0

    def add(self, address: str = ADDRESS, **kwargs) -> FakeAdvertisement:
        advertisement = FakeAdvertisement(address, **kwargs)
        self.advertisements.append(advertisement)
        return advertisement

    def remove(self, address: str = ADDRESS) -> None:
        self.advertisements = [a for a in self.advertisements if a.address != address]

    async def discover(self) -> List[FakeAdvertisement]:
        self.discover_calls += 1
        if self.discover_error is not None:
            raise self.discover_error
        return list(self.advertisements)

    async def find(self, connection_id: str) -> FakeAdvertisement:
        self.find_calls += 1
        if self.discover_error is not None:
            raise TransportFailure(str(self.discover_error))
        for advertisement in self.advertisements:
            if advertisement.connection_id == connection_id:
                return advertisement
        raise NotFound(f"no advertisement for {connection_id}")


class ManualTimer:
    def __init__(self, due: float, callback: Callable[[], Awaitable[None]], interval: Optional[float] = None) -> None:
        self.due = due
        self.callback = callback
        self.interval = interval
        self.cancelled = False
        self.fired = False

    @property
    def active(self) -> bool:
        return not self.cancelled and not self.fired

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Deterministic scheduler; time only moves when :meth:`advance` is awaited."""

    def __init__(self) -> None:
        self.now = 0.0
        self.timers: List[ManualTimer] = []

    def call_later(self, delay: float, callback) -> ManualTimer:
        timer = ManualTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def call_every(self, interval: float, callback) -> ManualTimer:
        timer = ManualTimer(self.now + interval, callback, interval)
        self.timers.append(timer)
        return timer

    def pending(self, *, repeating: Optional[bool] = None) -> List[ManualTimer]:
        return [
            timer
            for timer in self.timers
            if timer.active and (repeating is None or (timer.interval is not None) == repeating)
        ]

    def pending_callbacks(self, name: str) -> int:
        return sum(1 for t in self.pending() if getattr(t.callback, "__name__", "") == name)

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self.timers if t.active and t.due <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.now = max(self.now, timer.due)
            if timer.interval is None:
                timer.fired = True
            else:
                timer.due += timer.interval
            await timer.callback()
        self.now = target
