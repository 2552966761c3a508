"""Connection lifecycle for one paired key-finder tag."""
from __future__ import annotations

import logging
from typing import Any, Optional

from keytag import const
from keytag.config import SessionTimings
from keytag.errors import CapabilityWriteFailure, NotFound, TransportFailure
from keytag.hub import DeviceContext
from keytag.eventlog import TagEventLog
from keytag.models import ConnectionPhase, SessionSnapshot, TagIdentity
from keytag.scheduler import Scheduler, Timer
from keytag.transport import Characteristic, Link, Transport

logger = logging.getLogger(__name__)


class TagSession:
    """Keep one tag connected and its hub capabilities in step with the link.

    The session is driven by :meth:`on_create` and :meth:`on_remove`. Between
    the two it connects, binds the control and alert services, and on any
    failure or link loss raises ``alarm_disconnected`` and schedules exactly
    one reconnect attempt after ``timings.reconnect_delay``. Retries only ever
    happen from that timer, so two attempts never overlap.
    """

    def __init__(
        self,
        identity: TagIdentity,
        *,
        transport: Transport,
        context: DeviceContext,
        scheduler: Scheduler,
        timings: Optional[SessionTimings] = None,
        events: Optional[TagEventLog] = None,
    ) -> None:
        self.identity = identity
        self.timings = timings or SessionTimings()
        self._transport = transport
        self._capabilities = context.capabilities
        self._automation = context.automation
        self._scheduler = scheduler
        self._events = events

        self._phase = ConnectionPhase.DISCONNECTED
        self._active_link: Optional[Link] = None
        self._alert_char: Optional[Characteristic] = None
        self.was_previously_disconnected = False
        self.signal_strength: Optional[int] = None
        self.ring_active = False

        self._reconnect_timer: Optional[Timer] = None
        self._ring_timer: Optional[Timer] = None
        self._rssi_timer: Optional[Timer] = None

        self._ring_listener_registered = False
        self._actions_registered = False
        self._created = False
        self._removed = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def address(self) -> str:
        return self.identity.address

    @property
    def phase(self) -> ConnectionPhase:
        return self._phase

    @property
    def active_link(self) -> Optional[Link]:
        return self._active_link

    @property
    def connected(self) -> bool:
        return self._phase is ConnectionPhase.CONNECTED

    @property
    def removed(self) -> bool:
        return self._removed

    @property
    def reconnect_pending(self) -> bool:
        return _is_active(self._reconnect_timer)

    @property
    def ring_timer_pending(self) -> bool:
        return _is_active(self._ring_timer)

    @property
    def rssi_monitor_running(self) -> bool:
        return _is_active(self._rssi_timer)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            address=self.address,
            phase=self._phase,
            signal_strength=self.signal_strength,
            ring_active=self.ring_active,
            was_previously_disconnected=self.was_previously_disconnected,
            reconnect_pending=self.reconnect_pending,
            ring_timer_pending=self.ring_timer_pending,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def on_create(self) -> None:
        if self._created:
            logger.debug("Session for %s already created", self.address)
            return
        self._created = True
        logger.info("Tag %s session created", self.address)
        await self._set_capability(const.CAP_RING, False)
        await self._set_capability(const.CAP_ALARM_DISCONNECTED, True)
        self.start_rssi_monitor()
        await self.connect()

    async def on_remove(self) -> None:
        """Cancel every timer and release the link. Never raises."""
        if self._removed:
            return
        self._removed = True
        logger.info("Tag %s session removed", self.address)

        for timer in (self._reconnect_timer, self._ring_timer, self._rssi_timer):
            if timer is not None:
                timer.cancel()
        self._reconnect_timer = None
        self._ring_timer = None
        self._rssi_timer = None

        link = self._active_link
        self._phase = ConnectionPhase.DISCONNECTED
        self._active_link = None
        self._alert_char = None
        if link is not None:
            await self._discard_link(link)
        self._record("session_removed")

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------
    async def connect(self) -> bool:
        """Run one connect attempt. Failures schedule a reconnect and return False."""
        if self._removed:
            return False
        if self._phase is not ConnectionPhase.DISCONNECTED:
            logger.debug("Ignoring connect for %s while %s", self.address, self._phase.value)
            return False

        self._phase = ConnectionPhase.CONNECTING
        self._record("connect_attempt")
        link: Optional[Link] = None
        try:
            logger.info("Finding tag %s", self.address)
            advertisement = await self._transport.find(self.identity.connection_id)
            await self._update_signal_strength(advertisement.rssi)

            logger.info("Connecting to tag %s", self.address)
            link = await advertisement.connect()
            if self._removed:
                await self._discard_link(link)
                return False

            await self._enter_connected(link)
            if self._removed:
                return False
            self._transport.registry.register(link)
            alert_char = await self._bind(link)
        except (NotFound, TransportFailure) as exc:
            logger.warning("Connection attempt to %s failed: %s", self.address, exc, exc_info=True)
            await self._handle_connect_failure(link, exc)
            return False
        except Exception as exc:
            logger.exception("Unexpected error while connecting to %s", self.address)
            await self._handle_connect_failure(link, exc)
            return False

        if self._removed or link is not self._active_link:
            return False

        self._alert_char = alert_char
        link.once_disconnected(lambda: self._on_disconnected(link))
        self._register_listeners()
        logger.info("Tag %s connected", self.address)
        self._record("connected")
        return True

    async def _enter_connected(self, link: Link) -> None:
        self._phase = ConnectionPhase.CONNECTED
        self._active_link = link
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        await self._set_capability(const.CAP_ALARM_DISCONNECTED, False)
        if self.was_previously_disconnected:
            logger.info("Tag %s reconnected", self.address)
            await self._emit(const.TRIGGER_DEVICE_RECONNECTED)
            self.was_previously_disconnected = False

    async def _bind(self, link: Link) -> Characteristic:
        services = await link.discover_services()
        logger.debug("Discovered %d services on %s", len(services), self.address)

        control = link.get_service(const.CONTROL_SERVICE_UUID)
        if control is None:
            raise NotFound(f"control service {const.CONTROL_SERVICE_UUID} not found")
        alert_service = link.get_service(const.ALERT_SERVICE_UUID)
        if alert_service is None:
            raise NotFound(f"alert service {const.ALERT_SERVICE_UUID} not found")

        link_loss = control.get_characteristic(const.LINK_LOSS_CHAR_UUID)
        if link_loss is None:
            raise NotFound(f"link-loss characteristic {const.LINK_LOSS_CHAR_UUID} not found")
        if control.get_characteristic(const.BUTTON_CHAR_UUID) is None:
            raise NotFound(f"button characteristic {const.BUTTON_CHAR_UUID} not found")
        alert = alert_service.get_characteristic(const.ALERT_LEVEL_CHAR_UUID)
        if alert is None:
            raise NotFound(f"alert characteristic {const.ALERT_LEVEL_CHAR_UUID} not found")

        # The tag buzzes on its own when the link drops unless told not to.
        await link_loss.write(const.LINK_LOSS_DISABLE)
        logger.debug("Disabled link-loss alarm on %s", self.address)
        return alert

    async def _handle_connect_failure(self, link: Optional[Link], exc: BaseException) -> None:
        self._record("connect_failed", detail=f"{type(exc).__name__}: {exc}")
        owned = link is not None and link is self._active_link
        self._phase = ConnectionPhase.DISCONNECTED
        self._active_link = None
        self._alert_char = None
        if owned:
            await self._discard_link(link)
        if self._removed:
            return
        await self._set_capability(const.CAP_ALARM_DISCONNECTED, True)
        self.was_previously_disconnected = True
        self._schedule_reconnect()

    async def _on_disconnected(self, link: Link) -> None:
        if self._removed or link is not self._active_link:
            logger.debug("Ignoring stale disconnect for %s", self.address)
            return
        logger.info("Tag %s disconnected", self.address)
        self._phase = ConnectionPhase.DISCONNECTED
        self._active_link = None
        self._alert_char = None
        self._transport.registry.unregister(link)
        self._record("disconnected")

        await self._set_capability(const.CAP_ALARM_DISCONNECTED, True)
        self.was_previously_disconnected = True
        await self._emit(const.TRIGGER_DEVICE_DISCONNECTED)
        self._schedule_reconnect()

    async def _discard_link(self, link: Link) -> None:
        self._transport.registry.unregister(link)
        try:
            await link.disconnect()
        except Exception as exc:
            logger.warning("Error disconnecting from %s: %s", self.address, exc)

    def _schedule_reconnect(self) -> None:
        if self._removed:
            return
        if _is_active(self._reconnect_timer):
            logger.debug("Reconnect for %s already pending", self.address)
            return
        logger.info("Reconnecting to %s in %.1fs", self.address, self.timings.reconnect_delay)
        self._reconnect_timer = self._scheduler.call_later(
            self.timings.reconnect_delay, self._reconnect_due
        )

    async def _reconnect_due(self) -> None:
        self._reconnect_timer = None
        await self.connect()

    # ------------------------------------------------------------------
    # Ringing
    # ------------------------------------------------------------------
    async def ring_device(self, active: bool) -> bool:
        """Write the start or stop alert level. Returns False on failure."""
        action = "start" if active else "stop"
        alert = self._alert_char
        if alert is None:
            logger.warning("Cannot %s ringing on %s: not connected", action, self.address)
            self._record(f"ring_{action}", detail="not connected")
            return False
        try:
            await alert.write(const.ALERT_START if active else const.ALERT_STOP)
        except Exception:
            logger.exception("Error trying to %s ringing on %s", action, self.address)
            self._record(f"ring_{action}", detail="write failed")
            return False
        logger.info("Ring %s sent to %s", action, self.address)
        self._record(f"ring_{action}")
        return True

    async def start_ringing(self) -> None:
        logger.info("Action: start ringing %s", self.address)
        await self.ring_device(True)
        self.ring_active = True
        await self._set_capability(const.CAP_RING, True)
        self._arm_ring_timer()

    async def stop_ringing(self) -> None:
        logger.info("Action: stop ringing %s", self.address)
        await self.ring_device(False)
        self._cancel_ring_timer()
        self.ring_active = False
        await self._set_capability(const.CAP_RING, False)

    async def _on_ring_capability(self, value: Any) -> None:
        active = bool(value)
        await self.ring_device(active)
        self.ring_active = active
        if active:
            self._arm_ring_timer()
        else:
            self._cancel_ring_timer()

    def _arm_ring_timer(self) -> None:
        self._cancel_ring_timer()
        if self._removed:
            return
        self._ring_timer = self._scheduler.call_later(self.timings.ring_duration, self._ring_timeout)

    def _cancel_ring_timer(self) -> None:
        if self._ring_timer is not None:
            self._ring_timer.cancel()
            self._ring_timer = None

    async def _ring_timeout(self) -> None:
        self._ring_timer = None
        await self.ring_device(False)
        self.ring_active = False
        await self._set_capability(const.CAP_RING, False)

    def _register_listeners(self) -> None:
        if not self._ring_listener_registered:
            self._capabilities.register_listener(const.CAP_RING, self._on_ring_capability)
            self._ring_listener_registered = True
        if not self._actions_registered:
            self._automation.register_action(const.ACTION_START_RINGING, self.start_ringing)
            self._automation.register_action(const.ACTION_STOP_RINGING, self.stop_ringing)
            self._actions_registered = True

    # ------------------------------------------------------------------
    # Signal strength
    # ------------------------------------------------------------------
    def start_rssi_monitor(self) -> None:
        if self._removed or _is_active(self._rssi_timer):
            return
        logger.debug("Starting RSSI monitor for %s", self.address)
        self._rssi_timer = self._scheduler.call_every(
            self.timings.rssi_interval, self.poll_signal_strength
        )

    async def poll_signal_strength(self) -> Optional[int]:
        link = self._active_link
        try:
            if link is not None:
                rssi: Optional[int] = await link.update_rssi()
            else:
                rssi = await self._scan_for_rssi()
        except NotFound as exc:
            logger.info("Tag %s not seen while polling RSSI: %s", self.address, exc)
            return None
        except TransportFailure as exc:
            logger.warning("Error updating RSSI for %s: %s", self.address, exc)
            return None
        if rssi is None:
            logger.info("Tag %s not found in BLE scan - may be out of range", self.address)
            return None
        await self._update_signal_strength(rssi)
        return rssi

    async def _scan_for_rssi(self) -> Optional[int]:
        connection_id = self.identity.connection_id
        for advertisement in await self._transport.discover():
            if advertisement.connection_id == connection_id:
                return advertisement.rssi
        return None

    async def _update_signal_strength(self, rssi: Optional[int]) -> None:
        if rssi is None:
            return
        self.signal_strength = int(rssi)
        await self._set_capability(const.CAP_SIGNAL_STRENGTH, self.signal_strength)
        self._record("rssi", value=float(self.signal_strength))

    # ------------------------------------------------------------------
    # Hub helpers
    # ------------------------------------------------------------------
    async def _set_capability(self, name: str, value: Any) -> None:
        try:
            await self._capabilities.set_value(name, value)
        except CapabilityWriteFailure as exc:
            logger.error("Error setting %s on %s: %s", name, self.address, exc)

    async def _emit(self, trigger: str) -> None:
        # Best-effort: delivery failures never change connection state.
        try:
            await self._automation.trigger(trigger)
        except Exception:
            logger.exception("Error triggering %s for %s", trigger, self.address)

    def _record(self, event: str, *, value: Optional[float] = None, detail: Optional[str] = None) -> None:
        if self._events is not None:
            self._events.record(event, self._phase.value, value=value, detail=detail)


def _is_active(timer: Optional[Timer]) -> bool:
    return timer is not None and timer.active


__all__ = ["TagSession"]
