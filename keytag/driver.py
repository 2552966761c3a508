"""Driver: maps pairing and unpairing onto tag session lifecycles."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from keytag import const
from keytag.config import SessionTimings
from keytag.errors import AlreadyPaired, UnknownDevice
from keytag.hub import LocalHub
from keytag.eventlog import EventLog
from keytag.models import PairingCandidate, TagIdentity
from keytag.scanner import list_candidates
from keytag.scheduler import Scheduler
from keytag.session import TagSession
from keytag.store import PairedTag, PairingStore
from keytag.transport import Transport

logger = logging.getLogger(__name__)


class TagDriver:
    """Owns the pairing store and one :class:`TagSession` per paired tag."""

    def __init__(
        self,
        *,
        transport: Transport,
        store: PairingStore,
        hub: LocalHub,
        scheduler: Scheduler,
        timings: Optional[SessionTimings] = None,
        events: Optional[EventLog] = None,
        product_name: Optional[str] = None,
    ) -> None:
        self.transport = transport
        self.store = store
        self.hub = hub
        self.scheduler = scheduler
        self.timings = timings or SessionTimings()
        self.events = events
        self.product_name = product_name or const.PRODUCT_NAME
        self._sessions: Dict[str, TagSession] = {}

    @property
    def sessions(self) -> Dict[str, TagSession]:
        return dict(self._sessions)

    def session(self, address: str) -> TagSession:
        try:
            return self._sessions[TagIdentity(address).address]
        except (KeyError, ValueError):
            raise UnknownDevice(address) from None

    async def list_pairing_candidates(self) -> List[PairingCandidate]:
        candidates = await list_candidates(self.transport, self.product_name)
        paired = {record.address for record in self.store.all()}
        available = []
        for candidate in candidates:
            try:
                address = TagIdentity(candidate.address).address
            except ValueError:
                # CoreBluetooth reports per-host UUIDs instead of hardware addresses.
                logger.warning("Skipping tag with unsupported address %r", candidate.address)
                continue
            if address not in paired:
                available.append(candidate)
        return available

    async def pair(self, candidate: PairingCandidate, *, name: Optional[str] = None) -> TagSession:
        identity = TagIdentity(candidate.address)
        if identity.address in self._sessions:
            raise AlreadyPaired(identity.address)
        record = self.store.add(candidate, name=name)
        logger.info("Tag %s has been added", record.address)
        return await self._start_session(record)

    async def unpair(self, address: str) -> None:
        identity = TagIdentity(address)
        session = self._sessions.pop(identity.address, None)
        if session is None and self.store.get(identity.address) is None:
            raise UnknownDevice(address)
        if session is not None:
            await session.on_remove()
        self.hub.remove_device(identity.address)
        self.store.remove(identity.address)
        logger.info("Tag %s has been deleted", identity.address)

    def rename(self, address: str, name: str) -> PairedTag:
        return self.store.rename(address, name)

    async def restore(self) -> List[TagSession]:
        """Start a session for every tag already in the pairing store."""
        started = []
        for record in self.store.all():
            if record.address in self._sessions:
                continue
            started.append(await self._start_session(record))
        logger.info("Restored %d paired tag(s)", len(started))
        return started

    async def shutdown(self) -> None:
        for address in list(self._sessions):
            session = self._sessions.pop(address)
            await session.on_remove()
        logger.info("Driver stopped")

    async def _start_session(self, record: PairedTag) -> TagSession:
        identity = record.identity
        context = self.hub.add_device(identity.address)
        tag_events = self.events.for_tag(identity.address) if self.events else None
        session = TagSession(
            identity,
            transport=self.transport,
            context=context,
            scheduler=self.scheduler,
            timings=self.timings,
            events=tag_events,
        )
        self._sessions[identity.address] = session
        await session.on_create()
        return session


__all__ = ["TagDriver"]
