"""BLE transport used by tag sessions, built on top of bleak.

Sessions depend only on the small protocol defined here (discover, find,
connect, service/characteristic lookup, write, RSSI refresh, disconnect
observers and the active-link registry). :class:`BleakTransport` is the
production implementation; tests supply fakes with the same shape.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Set, TYPE_CHECKING, TypeAlias

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from keytag import const
from keytag.errors import NotFound, TransportFailure
from keytag.models import to_connection_id

logger = logging.getLogger(__name__)

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
	from bleak.backends.characteristic import BleakGATTCharacteristic as _BleakCharacteristic
	from bleak.backends.device import BLEDevice as _BLEDevice
	from bleak.backends.scanner import AdvertisementData as _AdvertisementData
	from bleak.backends.service import BleakGATTService as _BleakService
else:
	_BleakCharacteristic = Any
	_BLEDevice = Any
	_AdvertisementData = Any
	_BleakService = Any

BLEDevice: TypeAlias = _BLEDevice
AdvertisementData: TypeAlias = _AdvertisementData
DisconnectObserver = Callable[[], Awaitable[None]]

_TRANSPORT_ERRORS = (BleakError, asyncio.TimeoutError, OSError)


# ----------------------------------------------------------------------
# Contract
# ----------------------------------------------------------------------
class Characteristic(Protocol):
	uuid: str

	async def write(self, data: bytes) -> None: ...


class Service(Protocol):
	uuid: str

	def get_characteristic(self, uuid: str) -> Optional[Characteristic]: ...


class Link(Protocol):
	connection_id: str

	async def discover_services(self) -> Sequence[Service]: ...

	def get_service(self, uuid: str) -> Optional[Service]: ...

	async def update_rssi(self) -> int: ...

	async def disconnect(self) -> None: ...

	def once_disconnected(self, observer: DisconnectObserver) -> None: ...


class Advertisement(Protocol):
	address: str
	local_name: Optional[str]
	manufacturer_data: bytes
	rssi: Optional[int]

	@property
	def connection_id(self) -> str: ...

	async def connect(self) -> Link: ...


class Transport(Protocol):
	registry: "LinkRegistry"

	async def discover(self) -> Sequence[Advertisement]: ...

	async def find(self, connection_id: str) -> Advertisement: ...


class LinkRegistry:
	"""Links that are currently live, keyed by connection identifier."""

	def __init__(self) -> None:
		self._links: Dict[str, Link] = {}

	def register(self, link: Link) -> None:
		current = self._links.get(link.connection_id)
		if current is not None and current is not link:
			logger.warning("Replacing registered link for %s", link.connection_id)
		self._links[link.connection_id] = link

	def unregister(self, link: Link) -> None:
		if self._links.get(link.connection_id) is link:
			del self._links[link.connection_id]

	def get(self, connection_id: str) -> Optional[Link]:
		return self._links.get(connection_id)

	def links(self) -> List[Link]:
		return list(self._links.values())

	def __contains__(self, link: object) -> bool:
		return any(existing is link for existing in self._links.values())

	def __len__(self) -> int:
		return len(self._links)


def manufacturer_payload(manufacturer_data: Optional[Dict[int, bytes]]) -> bytes:
	"""Rebuild the raw AD payload: little-endian company id, then data."""
	payload = bytearray()
	for company_id, data in (manufacturer_data or {}).items():
		payload += int(company_id).to_bytes(2, "little")
		payload += bytes(data)
	return bytes(payload)


# ----------------------------------------------------------------------
# bleak implementation
# ----------------------------------------------------------------------
class BleakCharacteristic:
	def __init__(self, client: BleakClient, characteristic: _BleakCharacteristic) -> None:
		self._client = client
		self._characteristic = characteristic
		self.uuid = str(characteristic.uuid).lower()

	@property
	def properties(self) -> List[str]:
		return list(getattr(self._characteristic, "properties", None) or [])

	async def write(self, data: bytes) -> None:
		# Alert Level is write-without-response on most tags.
		response = "write" in self.properties
		try:
			await self._client.write_gatt_char(self._characteristic, data, response=response)
		except _TRANSPORT_ERRORS as exc:
			raise TransportFailure(f"write to {self.uuid} failed: {exc}") from exc


class BleakService:
	def __init__(self, client: BleakClient, service: _BleakService) -> None:
		self._client = client
		self._service = service
		self.uuid = str(service.uuid).lower()

	def get_characteristic(self, uuid: str) -> Optional[BleakCharacteristic]:
		characteristic = self._service.get_characteristic(uuid)
		if characteristic is None:
			return None
		return BleakCharacteristic(self._client, characteristic)


class BleakLink:
	"""A connected :class:`bleak.BleakClient` seen through the :class:`Link` protocol."""

	def __init__(self, transport: "BleakTransport", address: str) -> None:
		self._transport = transport
		self.address = address
		self.connection_id = to_connection_id(address)
		self._observers: List[DisconnectObserver] = []
		self._pending: Set[asyncio.Task[None]] = set()
		self._client: Optional[BleakClient] = None
		self._dropped = False

	def attach(self, client: BleakClient) -> None:
		self._client = client

	@property
	def client(self) -> BleakClient:
		if self._client is None:
			raise TransportFailure(f"link to {self.address} has no client")
		return self._client

	async def discover_services(self) -> List[BleakService]:
		services = self.client.services
		if services is None:
			raise TransportFailure(f"service discovery on {self.address} returned nothing")
		return [BleakService(self.client, service) for service in services]

	def get_service(self, uuid: str) -> Optional[BleakService]:
		services = self.client.services
		service = services.get_service(uuid) if services is not None else None
		if service is None:
			return None
		return BleakService(self.client, service)

	async def update_rssi(self) -> int:
		client = self.client
		rssi: Optional[int] = None
		if hasattr(client, "get_rssi"):
			try:
				rssi = await client.get_rssi()  # type: ignore[attr-defined]
			except _TRANSPORT_ERRORS as exc:
				logger.debug("get_rssi failed for %s: %s", self.address, exc)
		if rssi is None:
			rssi = getattr(client, "rssi", None)
		if rssi is not None:
			return int(rssi)

		# Backend has no live RSSI; fall back to the advertisement.
		advertisement = await self._transport.find(self.connection_id)
		if advertisement.rssi is None:
			raise NotFound(f"no RSSI reported for {self.address}")
		return advertisement.rssi

	async def disconnect(self) -> None:
		if self._client is None:
			return
		try:
			await self._client.disconnect()
		except _TRANSPORT_ERRORS as exc:
			raise TransportFailure(f"disconnect from {self.address} failed: {exc}") from exc

	def once_disconnected(self, observer: DisconnectObserver) -> None:
		if self._dropped:
			# The link went away before anyone was listening.
			self._notify([observer])
			return
		self._observers.append(observer)

	def handle_disconnect(self, _client: Any = None) -> None:
		self._dropped = True
		observers, self._observers = self._observers, []
		if not observers:
			logger.debug("Link to %s dropped before an observer was registered", self.address)
			return
		self._notify(observers)

	def _notify(self, observers: List[DisconnectObserver]) -> None:
		for observer in observers:
			task = asyncio.ensure_future(observer())
			self._pending.add(task)
			task.add_done_callback(self._pending.discard)


class BleakAdvertisement:
	def __init__(
		self,
		transport: "BleakTransport",
		device: BLEDevice,
		advertisement: Optional[AdvertisementData] = None,
	) -> None:
		self._transport = transport
		self._device = device
		self.address: str = device.address
		local_name = getattr(advertisement, "local_name", None) if advertisement is not None else None
		self.local_name: Optional[str] = local_name or device.name or None
		self.manufacturer_data = manufacturer_payload(
			getattr(advertisement, "manufacturer_data", None) if advertisement is not None else None
		)
		rssi = getattr(advertisement, "rssi", None) if advertisement is not None else None
		self.rssi: Optional[int] = rssi if rssi is not None else getattr(device, "rssi", None)

	@property
	def connection_id(self) -> str:
		return to_connection_id(self.address)

	async def connect(self) -> BleakLink:
		return await self._transport.connect(self._device)

	def __repr__(self) -> str:
		return f"<BleakAdvertisement {self.address} name={self.local_name!r} rssi={self.rssi}>"


class BleakTransport:
	"""Scan, find and connect through bleak, tracking live links."""

	def __init__(
		self,
		*,
		adapter: Optional[str] = None,
		scan_timeout: float = const.DEFAULT_SCAN_TIMEOUT,
		connect_timeout: float = const.DEFAULT_CONNECT_TIMEOUT,
	) -> None:
		self.adapter = adapter
		self.scan_timeout = scan_timeout
		self.connect_timeout = connect_timeout
		self.registry = LinkRegistry()

	async def discover(self) -> List[BleakAdvertisement]:
		kwargs: Dict[str, Any] = {}
		if self.adapter:
			kwargs["adapter"] = self.adapter
		try:
			results = await BleakScanner.discover(timeout=self.scan_timeout, return_adv=True, **kwargs)
		except _TRANSPORT_ERRORS as exc:
			logger.exception("BLE scan failed: %s", exc)
			raise TransportFailure(f"scan failed: {exc}") from exc
		return [BleakAdvertisement(self, device, adv) for device, adv in results.values()]

	async def find(self, connection_id: str) -> BleakAdvertisement:
		for advertisement in await self.discover():
			if advertisement.connection_id == connection_id:
				return advertisement
		raise NotFound(f"no advertisement for {connection_id}")

	async def connect(self, device: BLEDevice) -> BleakLink:
		link = BleakLink(self, device.address)
		kwargs: Dict[str, Any] = {
			"disconnected_callback": link.handle_disconnect,
			"timeout": self.connect_timeout,
		}
		if self.adapter:
			kwargs["adapter"] = self.adapter
		client = BleakClient(device, **kwargs)
		try:
			await client.connect()
		except _TRANSPORT_ERRORS as exc:
			raise TransportFailure(f"connect to {device.address} failed: {exc}") from exc
		link.attach(client)
		return link

	async def close(self) -> None:
		for link in self.registry.links():
			self.registry.unregister(link)
			try:
				await link.disconnect()
			except TransportFailure as exc:
				logger.warning("Disconnect during transport close failed: %s", exc)


__all__ = [
	"Advertisement",
	"BleakAdvertisement",
	"BleakCharacteristic",
	"BleakLink",
	"BleakService",
	"BleakTransport",
	"Characteristic",
	"DisconnectObserver",
	"Link",
	"LinkRegistry",
	"Service",
	"Transport",
	"manufacturer_payload",
]
