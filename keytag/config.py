"""Runtime settings for the keytag driver."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from keytag import const

logger = logging.getLogger(__name__)

ENV_PREFIX = "KEYTAG_"


@dataclass(slots=True)
class SessionTimings:
	"""Delays used by :class:`keytag.session.TagSession`."""

	reconnect_delay: float = const.DEFAULT_RECONNECT_DELAY
	ring_duration: float = const.DEFAULT_RING_DURATION
	rssi_interval: float = const.DEFAULT_RSSI_INTERVAL


@dataclass(slots=True)
class Settings:
	"""Configuration bundle shared by the CLI, API and driver."""

	database_url: str = "sqlite:///keytag.sqlite3"
	metrics_path: Optional[str] = "keytag-events.csv"
	product_name: str = const.PRODUCT_NAME
	adapter: Optional[str] = None
	scan_timeout: float = const.DEFAULT_SCAN_TIMEOUT
	connect_timeout: float = const.DEFAULT_CONNECT_TIMEOUT
	api_host: str = "127.0.0.1"
	api_port: int = 8000
	timings: SessionTimings = field(default_factory=SessionTimings)

	@classmethod
	def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
		env = os.environ if environ is None else environ
		defaults = cls()

		def _get(name: str) -> Optional[str]:
			value = env.get(ENV_PREFIX + name)
			if value is None or not value.strip():
				return None
			return value

		metrics_path = _get("METRICS_PATH")
		if metrics_path is not None and metrics_path.lower() in ("off", "none", "-"):
			metrics_path = None
		elif metrics_path is None:
			metrics_path = defaults.metrics_path

		return cls(
			database_url=_get("DATABASE_URL") or defaults.database_url,
			metrics_path=metrics_path,
			# Not stripped: the advertised name carries trailing padding.
			product_name=env.get(ENV_PREFIX + "PRODUCT_NAME") or defaults.product_name,
			adapter=_get("ADAPTER"),
			scan_timeout=_positive_float(_get("SCAN_TIMEOUT"), defaults.scan_timeout),
			connect_timeout=_positive_float(_get("CONNECT_TIMEOUT"), defaults.connect_timeout),
			api_host=_get("API_HOST") or defaults.api_host,
			api_port=int(_positive_float(_get("API_PORT"), defaults.api_port)),
			timings=SessionTimings(
				reconnect_delay=_positive_float(_get("RECONNECT_DELAY"), const.DEFAULT_RECONNECT_DELAY),
				ring_duration=_positive_float(_get("RING_DURATION"), const.DEFAULT_RING_DURATION),
				rssi_interval=_positive_float(_get("RSSI_INTERVAL"), const.DEFAULT_RSSI_INTERVAL),
			),
		)


def _positive_float(value: Optional[str], default: float) -> float:
	if value is None:
		return default
	try:
		parsed = float(value)
	except (TypeError, ValueError):
		logger.warning("Ignoring invalid numeric setting %r; using %s", value, default)
		return default
	if parsed <= 0:
		logger.warning("Ignoring non-positive setting %r; using %s", value, default)
		return default
	return parsed


__all__ = ["Settings", "SessionTimings", "ENV_PREFIX"]
