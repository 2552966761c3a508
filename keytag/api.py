"""HTTP surface for the tag driver: pairing, device state, ring control and a trigger stream."""
from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect

from keytag import __version__, const
from keytag.driver import TagDriver
from keytag.errors import AlreadyPaired, CapabilityWriteFailure, TransportFailure, UnknownDevice
from keytag.models import PairingCandidate

logger = logging.getLogger(__name__)

app = FastAPI(title="keytag API", version=__version__)

_driver: Optional[TagDriver] = None


def configure(driver: Optional[TagDriver]) -> None:
    global _driver
    _driver = driver


def _require_driver() -> TagDriver:
    if _driver is None:
        raise HTTPException(status_code=503, detail="driver not running")
    return _driver


def _require_session(address: str):
    driver = _require_driver()
    try:
        return driver.session(address)
    except UnknownDevice:
        raise HTTPException(status_code=404, detail=f"unknown device {address}")


@app.get("/health")
async def health():
    return {"status": "ok", "time": time.time(), "driver": _driver is not None}


@app.get("/pairing/candidates")
async def pairing_candidates():
    driver = _require_driver()
    try:
        candidates = await driver.list_pairing_candidates()
    except TransportFailure as exc:
        logger.warning("Pairing scan failed: %s", exc)
        raise HTTPException(status_code=503, detail=f"scan failed: {exc}")
    return [candidate.to_dict() for candidate in candidates]


@app.get("/devices")
async def list_devices():
    driver = _require_driver()
    return [session.snapshot().to_dict() for session in driver.sessions.values()]


@app.post("/devices")
async def pair_device(
    address: str = Query(..., description="Tag hardware address (AA:BB:CC:DD:EE:FF)"),
    manufacturer_data: str = Query("", description="Hex manufacturer payload from the pairing scan"),
    name: Optional[str] = Query(None, description="Display name"),
):
    driver = _require_driver()
    try:
        bytes.fromhex(manufacturer_data)
        candidate = PairingCandidate(address=address, manufacturer_data=manufacturer_data.lower())
        session = await driver.pair(candidate, name=name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except AlreadyPaired:
        raise HTTPException(status_code=409, detail=f"{address} is already paired")
    return {"status": "paired", "device": session.snapshot().to_dict()}


@app.get("/devices/{address}")
async def device_state(address: str):
    session = _require_session(address)
    return session.snapshot().to_dict()


@app.delete("/devices/{address}")
async def unpair_device(address: str):
    driver = _require_driver()
    try:
        await driver.unpair(address)
    except (UnknownDevice, ValueError):
        raise HTTPException(status_code=404, detail=f"unknown device {address}")
    return {"status": "unpaired", "address": address}


@app.put("/devices/{address}/capabilities/ring")
async def set_ring(address: str, value: bool = Query(..., description="Ring on or off")):
    session = _require_session(address)
    capabilities = _require_driver().hub.device(session.address).capabilities
    try:
        await capabilities.request_value(const.CAP_RING, value)
    except CapabilityWriteFailure as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"address": session.address, "ring": capabilities.get(const.CAP_RING)}


@app.post("/devices/{address}/actions/{action}")
async def run_action(address: str, action: str):
    session = _require_session(address)
    if action not in const.ACTIONS:
        raise HTTPException(status_code=404, detail=f"unknown action {action}")
    automation = _require_driver().hub.device(session.address).automation
    ran = await automation.run_action(action)
    if not ran:
        raise HTTPException(status_code=409, detail=f"{action} is not available until the tag connects")
    return {"address": session.address, "action": action, "status": "ok"}


@app.websocket("/events")
async def events(ws: WebSocket):
    driver = _driver
    if driver is None:
        await ws.accept()
        await ws.close(code=1013)
        return
    queue = driver.hub.subscribe()
    await ws.accept()
    try:
        while True:
            event = await queue.get()
            await ws.send_json(event.to_dict())
    except WebSocketDisconnect:
        return
    finally:
        driver.hub.unsubscribe(queue)
