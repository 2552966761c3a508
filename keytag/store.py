"""SQLAlchemy persistence for paired tags.

Only what pairing produces is stored: the hardware address and the
manufacturer payload seen at pairing time (both write-once), plus a display
name the user may change.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import DateTime, String, create_engine, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from keytag.errors import AlreadyPaired, UnknownDevice
from keytag.models import PairingCandidate, TagIdentity

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class PairedTag(Base):
    """Database model for a paired tag."""

    __tablename__ = "paired_tags"

    address: Mapped[str] = mapped_column(String(17), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    manufacturer_data: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    paired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, nullable=False)

    @property
    def identity(self) -> TagIdentity:
        return TagIdentity(self.address)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "name": self.name,
            "manufacturer_data": self.manufacturer_data,
            "paired_at": self.paired_at.isoformat() if self.paired_at else None,
        }

    def __repr__(self) -> str:
        return f"<PairedTag {self.name} ({self.address})>"


class PairingStore:
    """CRUD over :class:`PairedTag` rows."""

    def __init__(self, url: str = "sqlite:///keytag.sqlite3", *, echo: bool = False) -> None:
        self.url = url
        self._engine = create_engine(url, echo=echo, future=True)
        Base.metadata.create_all(self._engine)
        self._sessions = sessionmaker(self._engine, expire_on_commit=False)

    def add(self, candidate: PairingCandidate, *, name: Optional[str] = None) -> PairedTag:
        address = TagIdentity(candidate.address).address
        record = PairedTag(
            address=address,
            name=name or candidate.name,
            manufacturer_data=candidate.manufacturer_data,
            paired_at=_utc_now(),
        )
        with self._sessions() as session:
            try:
                session.add(record)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise AlreadyPaired(address) from exc
        logger.info("Paired tag %s", address)
        return record

    def get(self, address: str) -> Optional[PairedTag]:
        with self._sessions() as session:
            return session.get(PairedTag, TagIdentity(address).address)

    def all(self) -> List[PairedTag]:
        with self._sessions() as session:
            return list(session.scalars(select(PairedTag).order_by(PairedTag.paired_at, PairedTag.address)))

    def rename(self, address: str, name: str) -> PairedTag:
        with self._sessions() as session:
            record = self._require(session, address)
            record.name = name
            session.commit()
            logger.info("Tag %s renamed to %r", record.address, name)
            return record

    def remove(self, address: str) -> None:
        with self._sessions() as session:
            record = self._require(session, address)
            session.delete(record)
            try:
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.exception("Failed to remove tag %s", address)
                raise
        logger.info("Unpaired tag %s", address)

    def close(self) -> None:
        self._engine.dispose()

    @staticmethod
    def _require(session: Session, address: str) -> PairedTag:
        record = session.get(PairedTag, TagIdentity(address).address)
        if record is None:
            raise UnknownDevice(address)
        return record


__all__ = ["Base", "PairedTag", "PairingStore"]
