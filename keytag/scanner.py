"""Pairing discovery: list nearby tags that advertise the product name."""
from __future__ import annotations

import logging
from typing import List, Sequence

from keytag import const
from keytag.models import PairingCandidate
from keytag.transport import Advertisement, Transport

logger = logging.getLogger(__name__)


def matches_product(advertisement: Advertisement, product_name: str = const.PRODUCT_NAME) -> bool:
	# Exact match: the firmware's padding is part of the name.
	return advertisement.local_name == product_name


def to_candidate(advertisement: Advertisement) -> PairingCandidate:
	return PairingCandidate(
		address=advertisement.address,
		manufacturer_data=bytes(advertisement.manufacturer_data or b"").hex(),
		rssi=advertisement.rssi,
	)


def filter_candidates(
	advertisements: Sequence[Advertisement],
	product_name: str = const.PRODUCT_NAME,
) -> List[PairingCandidate]:
	return [to_candidate(adv) for adv in advertisements if matches_product(adv, product_name)]


async def list_candidates(
	transport: Transport,
	product_name: str = const.PRODUCT_NAME,
) -> List[PairingCandidate]:
	"""Run a fresh scan and return one candidate per matching advertisement.

	Transport errors propagate to the caller unchanged.
	"""
	advertisements = await transport.discover()
	logger.debug("Discovered %d advertisements", len(advertisements))
	candidates = filter_candidates(advertisements, product_name)
	logger.info("%d tag(s) available for pairing", len(candidates))
	return candidates


__all__ = [
	"filter_candidates",
	"list_candidates",
	"matches_product",
	"to_candidate",
]
