#!/usr/bin/env python3
"""
Potentiostat Web Server: FastAPI + WebSocket bridge to the BLE potentiostat.

Owns one ExperimentSession and one PotentiostatClient. REST endpoints
configure, start and stop experiments; a WebSocket pushes session state
and sample batches to the browser as notifications arrive.

Usage:
    python3 server.py
    # Open http://<host>:8000
"""

import asyncio
import json
import logging
import os
import re
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, field_validator

import config
import potentiostat_client
from experiment_session import ExperimentSession, PreconditionError
from export import samples_to_csv
from params import ParameterError, parse_params
from potentiostat_client import PotentiostatClient

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("potentiostat")


@asynccontextmanager
async def lifespan(application):
    global loop, msg_queue, client, sess

    loop = asyncio.get_event_loop()
    msg_queue = asyncio.Queue(maxsize=500)
    sess = ExperimentSession()
    client = PotentiostatClient()
    _wire_client()

    broadcast_task = asyncio.create_task(broadcast_loop())
    log.info("Server started, open http://<host>:%d in browser", config.get("port"))

    yield

    # Shutdown
    state["running"] = False
    broadcast_task.cancel()
    if sess.running and client.connected:
        try:
            await potentiostat_client.stop_experiment(client, sess)
        except (ConnectionError, PreconditionError):
            log.warning("Could not stop experiment on shutdown")
    sess.teardown()
    await client.close()
    log.info("Server stopped")


app = FastAPI(title="Potentiostat Controller", lifespan=lifespan)

# CORS for Vite dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Async bridge ---
loop: asyncio.AbstractEventLoop = None
msg_queue: asyncio.Queue = None
client: PotentiostatClient = None
sess: ExperimentSession = None

# --- Shared state ---
state = {
    "running": True,
    "device_address": "",
    "devices": [],
}


def _enqueue(msg):
    try:
        msg_queue.put_nowait(msg)
    except asyncio.QueueFull:
        try:
            msg_queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        try:
            msg_queue.put_nowait(msg)
        except asyncio.QueueFull:
            pass


def push_msg(msg):
    if loop and msg_queue:
        loop.call_soon_threadsafe(_enqueue, msg)


def _samples_msg(samples, start):
    return {
        "type": "samples",
        "start": start,
        "samples": [s._asdict() for s in samples],
    }


def _wire_client():
    """Route notifications from the BLE client into the session and out to WS clients."""

    def on_status(data):
        before = sess.state
        after = sess.on_status(data)
        if after != before:
            push_msg(sess.to_dict())

    def on_results(chunk):
        samples = sess.on_telemetry(chunk)
        if samples:
            push_msg(_samples_msg(samples, len(sess.samples) - len(samples)))

    def on_disconnect():
        # before set_connected: teardown only reports the dropped partial record during a run
        sess.teardown()
        sess.set_connected(False)
        log.warning("Potentiostat disconnected")
        push_msg(sess.to_dict())
        push_msg({"type": "connection", "connected": False})

    client.on_status = on_status
    client.on_results = on_results
    client.on_disconnect = on_disconnect


# --- WebSocket manager ---


class ConnectionManager:
    def __init__(self):
        self.connections: list[WebSocket] = []

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self.connections.append(ws)

    def disconnect(self, ws: WebSocket):
        if ws in self.connections:
            self.connections.remove(ws)

    async def broadcast(self, msg: dict):
        data = json.dumps(msg)
        dead = []
        for ws in self.connections:
            try:
                await ws.send_text(data)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)


manager = ConnectionManager()


def build_status():
    status = sess.to_dict()
    status["type"] = "status"
    status["device_address"] = state["device_address"]
    status["device_connected"] = bool(client and client.connected)
    status["devices"] = state["devices"]
    return status


async def broadcast_session():
    await manager.broadcast(sess.to_dict())


async def broadcast_loop():
    while state["running"]:
        try:
            msg = await asyncio.wait_for(msg_queue.get(), timeout=0.5)
            await manager.broadcast(msg)
        except asyncio.TimeoutError:
            pass
        except Exception:
            await asyncio.sleep(0.1)


def _fail(e, status_code):
    return JSONResponse({"ok": False, "error": str(e)}, status_code=status_code)


# --- Pydantic models ---

_BLE_ADDR_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")


class ConnectRequest(BaseModel):
    address: str

    @field_validator("address")
    @classmethod
    def validate_ble_address(cls, v: str) -> str:
        if not _BLE_ADDR_RE.match(v):
            raise ValueError("Invalid BLE MAC address (expected XX:XX:XX:XX:XX:XX)")
        return v.upper()


class ParamsRequest(BaseModel):
    kind: str
    values: dict[str, int | float | str | None] = {}


# --- REST endpoints ---


@app.get("/api/status")
async def get_status():
    return build_status()


@app.get("/api/config")
async def get_config():
    return config.settings()


@app.post("/api/scan")
async def api_scan():
    try:
        devices = await potentiostat_client.scan()
    except ConnectionError as e:
        log.warning(f"Scan failed: {e}")
        return _fail(e, 503)
    state["devices"] = devices
    return {"ok": True, "devices": devices}


@app.post("/api/connect")
async def api_connect(req: ConnectRequest):
    try:
        await client.connect(req.address)
    except ConnectionError as e:
        log.warning(f"Cannot connect: {e}")
        return _fail(e, 503)
    state["device_address"] = req.address
    sess.set_connected(True)
    push_msg({"type": "connection", "connected": True})
    await broadcast_session()
    return {"ok": True, "address": req.address}


@app.post("/api/disconnect")
async def api_disconnect():
    sess.teardown()
    await client.close()
    sess.set_connected(False)
    state["device_address"] = ""
    push_msg({"type": "connection", "connected": False})
    await broadcast_session()
    return {"ok": True}


@app.post("/api/params")
async def api_set_params(req: ParamsRequest):
    try:
        params = parse_params(req.kind, req.values)
    except ParameterError as e:
        sess.set_params(None)
        await broadcast_session()
        return _fail(e, 422)
    sess.set_params(params)
    await broadcast_session()
    return {"ok": True, "kind": params.kind.name, "params": params.to_values(), "state": sess.state.value}


@app.post("/api/apply")
async def api_apply():
    try:
        await potentiostat_client.apply_config(client, sess)
    except PreconditionError as e:
        log.warning(str(e))
        return _fail(e, 409)
    except ConnectionError as e:
        log.warning(f"Cannot apply config: {e}")
        return _fail(e, 503)
    return {"ok": True}


@app.post("/api/start")
async def api_start():
    try:
        await potentiostat_client.start_experiment(client, sess)
    except PreconditionError as e:
        log.warning(str(e))
        return _fail(e, 409)
    except ConnectionError as e:
        log.warning(f"Cannot start: {e}")
        await broadcast_session()
        return _fail(e, 503)
    await broadcast_session()
    return {"ok": True, "state": sess.state.value}


@app.post("/api/stop")
async def api_stop():
    try:
        await potentiostat_client.stop_experiment(client, sess)
    except PreconditionError as e:
        return _fail(e, 409)
    except ConnectionError as e:
        log.warning(f"Cannot send stop: {e}")
        await broadcast_session()
        return _fail(e, 503)
    await broadcast_session()
    return {"ok": True, "state": sess.state.value}


@app.get("/api/samples")
async def api_samples(since: int = 0):
    since = max(0, since)
    return _samples_msg(sess.samples_since(since), since)


@app.get("/api/export.csv")
async def api_export_csv():
    return Response(
        content=samples_to_csv(sess.samples_since(0)),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="experiment.csv"'},
    )


# --- WebSocket endpoint ---


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await manager.connect(ws)
    try:
        await ws.send_text(json.dumps(build_status()))
    except Exception:
        pass
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(ws)
    except Exception:
        manager.disconnect(ws)


if __name__ == "__main__":
    ssl_args = {}
    cert = os.path.join(os.path.dirname(__file__) or ".", "cert.pem")
    key = os.path.join(os.path.dirname(__file__) or ".", "key.pem")
    if os.path.isfile(cert) and os.path.isfile(key):
        ssl_args = {"ssl_keyfile": key, "ssl_certfile": cert}
        log.info("HTTPS enabled (cert.pem + key.pem)")
    uvicorn.run(app, host=config.get("host"), port=config.get("port"), **ssl_args)
