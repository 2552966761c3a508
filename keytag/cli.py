"""keytag command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional, Sequence

import uvicorn
from rich.console import Console
from rich.table import Table

from keytag import api
from keytag.config import Settings
from keytag.driver import TagDriver
from keytag.errors import AlreadyPaired, KeytagError, UnknownDevice
from keytag.hub import LocalHub
from keytag.eventlog import EventLog
from keytag.models import PairingCandidate, TagIdentity
from keytag.scanner import list_candidates
from keytag.scheduler import AsyncioScheduler
from keytag.store import PairingStore
from keytag.transport import BleakTransport

logger = logging.getLogger(__name__)


def _build_transport(settings: Settings) -> BleakTransport:
	return BleakTransport(
		adapter=settings.adapter,
		scan_timeout=settings.scan_timeout,
		connect_timeout=settings.connect_timeout,
	)


def _print_table(title: str, columns: Sequence[str], rows: List[Dict[str, Any]]) -> None:
	table = Table(title=title, show_lines=False)
	for column in columns:
		table.add_column(column.upper())
	for row in rows:
		table.add_row(*(str(row.get(column, "")) for column in columns))
	Console().print(table)


def _emit(args: argparse.Namespace, title: str, columns: Sequence[str], rows: List[Dict[str, Any]]) -> None:
	if args.json:
		json.dump(rows, sys.stdout, indent=2)
		sys.stdout.write("\n")
		return
	_print_table(title, columns, rows)


async def _cmd_scan(args: argparse.Namespace, settings: Settings) -> int:
	candidates = await list_candidates(_build_transport(settings), settings.product_name)
	rows = [
		{"address": c.address, "name": c.name, "rssi": c.rssi, "manufacturer_data": c.manufacturer_data}
		for c in candidates
	]
	_emit(args, "Tags available for pairing", ("address", "name", "rssi", "manufacturer_data"), rows)
	return 0


async def _cmd_pair(args: argparse.Namespace, settings: Settings) -> int:
	address = TagIdentity(args.address).address
	if args.manufacturer_data is not None:
		bytes.fromhex(args.manufacturer_data)
		candidate = PairingCandidate(address=address, manufacturer_data=args.manufacturer_data.lower())
	else:
		candidates = await list_candidates(_build_transport(settings), settings.product_name)
		candidate = next((c for c in candidates if TagIdentity(c.address).address == address), None)
		if candidate is None:
			sys.stderr.write(f"{address} was not found in the pairing scan\n")
			return 1

	store = PairingStore(settings.database_url)
	try:
		record = store.add(candidate, name=args.name)
	except AlreadyPaired:
		sys.stderr.write(f"{address} is already paired\n")
		return 1
	finally:
		store.close()
	sys.stdout.write(f"paired {record.name} ({record.address})\n")
	return 0


async def _cmd_unpair(args: argparse.Namespace, settings: Settings) -> int:
	store = PairingStore(settings.database_url)
	try:
		store.remove(args.address)
	except UnknownDevice:
		sys.stderr.write(f"{args.address} is not paired\n")
		return 1
	finally:
		store.close()
	sys.stdout.write(f"unpaired {args.address}\n")
	return 0


async def _cmd_rename(args: argparse.Namespace, settings: Settings) -> int:
	store = PairingStore(settings.database_url)
	try:
		record = store.rename(args.address, args.name)
	except UnknownDevice:
		sys.stderr.write(f"{args.address} is not paired\n")
		return 1
	finally:
		store.close()
	sys.stdout.write(f"renamed {record.address} to {record.name}\n")
	return 0


async def _cmd_list(args: argparse.Namespace, settings: Settings) -> int:
	store = PairingStore(settings.database_url)
	try:
		rows = [record.to_dict() for record in store.all()]
	finally:
		store.close()
	_emit(args, "Paired tags", ("address", "name", "manufacturer_data", "paired_at"), rows)
	return 0


async def _wait_for_signal() -> None:
	stop_event = asyncio.Event()
	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, stop_event.set)
	await stop_event.wait()


async def _cmd_run(args: argparse.Namespace, settings: Settings) -> int:
	transport = _build_transport(settings)
	store = PairingStore(settings.database_url)
	scheduler = AsyncioScheduler()
	events = EventLog(settings.metrics_path) if settings.metrics_path else None
	driver = TagDriver(
		transport=transport,
		store=store,
		hub=LocalHub(),
		scheduler=scheduler,
		timings=settings.timings,
		events=events,
		product_name=settings.product_name,
	)

	try:
		await driver.restore()
		if args.api:
			api.configure(driver)
			# uvicorn handles SIGINT/SIGTERM itself while serving.
			server = uvicorn.Server(
				uvicorn.Config(api.app, host=settings.api_host, port=settings.api_port, log_level="info")
			)
			await server.serve()
		else:
			await _wait_for_signal()
	finally:
		api.configure(None)
		await driver.shutdown()
		await transport.close()
		scheduler.close()
		store.close()
	return 0


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="keytag: BLE key-finder tag driver")
	parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity")
	parser.add_argument("--database", help="SQLAlchemy URL of the pairing store")
	sub = parser.add_subparsers(dest="command", required=True)

	scan = sub.add_parser("scan", help="List nearby tags available for pairing")
	scan.add_argument("--timeout", type=float, help="Scan timeout in seconds")
	scan.add_argument("--json", action="store_true", help="Output JSON")
	scan.set_defaults(handler=_cmd_scan)

	pair = sub.add_parser("pair", help="Pair a tag by address")
	pair.add_argument("address", help="Tag hardware address")
	pair.add_argument("--manufacturer-data", help="Hex manufacturer payload; scans when omitted")
	pair.add_argument("--name", help="Display name")
	pair.set_defaults(handler=_cmd_pair)

	unpair = sub.add_parser("unpair", help="Remove a paired tag")
	unpair.add_argument("address", help="Tag hardware address")
	unpair.set_defaults(handler=_cmd_unpair)

	rename = sub.add_parser("rename", help="Change a paired tag's display name")
	rename.add_argument("address", help="Tag hardware address")
	rename.add_argument("name", help="New display name")
	rename.set_defaults(handler=_cmd_rename)

	listing = sub.add_parser("list", help="Show paired tags")
	listing.add_argument("--json", action="store_true", help="Output JSON")
	listing.set_defaults(handler=_cmd_list)

	run = sub.add_parser("run", help="Keep every paired tag connected")
	run.add_argument("--api", action="store_true", help="Serve the HTTP API while running")
	run.add_argument("--host", help="API bind host")
	run.add_argument("--port", type=int, help="API bind port")
	run.set_defaults(handler=_cmd_run)

	return parser


def _settings_from_args(args: argparse.Namespace) -> Settings:
	settings = Settings.from_env()
	if args.database:
		settings.database_url = args.database
	if getattr(args, "timeout", None):
		settings.scan_timeout = args.timeout
	if getattr(args, "host", None):
		settings.api_host = args.host
	if getattr(args, "port", None):
		settings.api_port = args.port
	return settings


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	level = logging.WARNING - 10 * min(args.verbose, 2)
	logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
	settings = _settings_from_args(args)
	try:
		return asyncio.run(args.handler(args, settings))
	except ValueError as exc:
		parser.error(str(exc))
	except KeytagError as exc:
		logger.error("%s failed: %s", args.command, exc)
		return 1


if __name__ == "__main__":
	sys.exit(main())
