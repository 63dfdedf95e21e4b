"""HTTP surface for the reconnection manager."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect

from retooth.config import ReconnectPolicy, Settings
from retooth.errors import InvalidAddress, PermissionDenied, TransportError
from retooth.metrics import tail_lines
from retooth.models import ConnectionState
from retooth.reconnect import Reconnector
from retooth.store import SqlTimestampStore, TimestampStore

logger = logging.getLogger(__name__)

app = FastAPI(title="retooth API", version="0.1.0")

_rec: Optional[Reconnector] = None
_store: Optional[TimestampStore] = None
_log_path: Optional[str] = None


def _get_store() -> TimestampStore:
    global _store
    if _store is None:
        _store = SqlTimestampStore(Settings.from_env().state_db)
    return _store


def _idle() -> Dict[str, Any]:
    return {"status": "idle"}


@app.get("/health")
async def health():
    return {"status": "ok", "time": time.time()}


@app.post("/device/connect")
async def connect(
    address: str = Query(..., description="Hardware address, e.g. AA:BB:CC:DD:EE:FF"),
    log: Optional[str] = Query(None, description="Metrics CSV path"),
    metadata: Optional[str] = Query(None, description="Optional JSON metadata to include with metrics"),
):
    global _rec, _log_path
    try:
        extra = json.loads(metadata) if metadata else {}
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid metadata JSON: {exc}")
    if not isinstance(extra, dict):
        raise HTTPException(status_code=400, detail="metadata must be a JSON object")

    log_path = log or str(Settings.from_env().metrics_log)
    try:
        candidate = Reconnector(
            address,
            store=_get_store(),
            policy=ReconnectPolicy.from_env(),
            log=log_path,
            metadata=extra,
        )
    except InvalidAddress as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    if _rec is not None:
        if _rec.address == candidate.address and _rec.state not in (ConnectionState.IDLE, ConnectionState.DISCONNECTED):
            return {"status": "already-connected", **_rec.snapshot()}
        await _rec.close()

    _rec = candidate
    _log_path = log_path
    try:
        await candidate.connect()
    except PermissionDenied as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except TransportError as exc:
        raise HTTPException(status_code=502, detail=f"Could not connect to {candidate.address}: {exc}")
    return {"status": "connected", **candidate.snapshot()}


@app.post("/device/disconnect")
async def disconnect():
    if _rec is None:
        return _idle()
    try:
        await _rec.disconnect()
    except TransportError as exc:
        raise HTTPException(status_code=502, detail=f"Could not disconnect {_rec.address}: {exc}")
    return {"status": "disconnected", **_rec.snapshot()}


async def _reconcile() -> Dict[str, Any]:
    if _rec is None:
        return _idle()
    decision = await _rec.reconcile()
    if decision is None:
        return {"status": "skipped", **_rec.snapshot()}
    return {"status": "burst" if decision.connect_now else "waiting", **_rec.snapshot()}


@app.post("/device/check")
async def check_now():
    return await _reconcile()


@app.post("/device/resume")
async def resume():
    """Lifecycle hook for hosts that know when they were suspended."""
    return await _reconcile()


@app.get("/device/state")
async def state():
    if _rec is None:
        return _idle()
    return {"status": "managed", **_rec.snapshot()}


@app.websocket("/events")
async def events(ws: WebSocket):
    await ws.accept()
    pos = 0
    try:
        while True:
            await asyncio.sleep(0.5)
            if not _log_path:
                continue
            lines, pos = await asyncio.to_thread(tail_lines, _log_path, pos)
            for line in lines:
                await ws.send_text(json.dumps({"csv": line}))
    except WebSocketDisconnect:
        return
