from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from typing import Any, AsyncIterator, Deque, Dict, Optional, Tuple

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from dualterm.actor import ConnectionActor, ConnectionFactory
from dualterm.bridge import EventBridge
from dualterm.models.config import ConnectionConfig, KeyFileAuth, PasswordAuth, SerialConfig, SshConfig
from dualterm.models.events import ConnectionEvent, ConnectionState, event_to_dict
from dualterm.models.host_key import TrustDecision
from dualterm.serial_transport import list_serial_ports
from dualterm.settings import EVENT_TICK_INTERVAL, HOST_KEY_PROMPT_TIMEOUT, LINE_ENDINGS
from dualterm.trust_store import HostKeyTrustStore, default_trust_store

logger = logging.getLogger("dualterm.api")

HISTORY_SIZE = 1000

_bridge = EventBridge()
_actor: Optional[ConnectionActor] = None
_store: Optional[HostKeyTrustStore] = None
_connection_factory: Optional[ConnectionFactory] = None
_history: Deque[Tuple[int, Dict[str, Any]]] = deque(maxlen=HISTORY_SIZE)
_seq = 0


def _record(name: str, event: ConnectionEvent) -> None:
    global _seq
    _seq += 1
    _history.append((_seq, {"seq": _seq, "connection": name, **event_to_dict(event)}))


@contextlib.asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    stop = asyncio.Event()
    ticker = asyncio.create_task(_bridge.run(_record, stop))
    try:
        yield
    finally:
        await _close_session()
        stop.set()
        await ticker


app = FastAPI(title="dualterm API", version="0.1.0", lifespan=_lifespan)


def _trust_store() -> HostKeyTrustStore:
    global _store
    if _store is None:
        _store = default_trust_store()
    return _store


def _require_actor() -> ConnectionActor:
    if _actor is None or _actor.finished:
        raise HTTPException(status_code=409, detail="No active session")
    return _actor


async def _close_session() -> None:
    global _actor
    actor, _actor = _actor, None
    if actor is None:
        return
    try:
        await actor.close()
    except Exception:
        logger.exception("closing session %s failed", actor.name)
    # Pick up the final Closed before the source is pruned.
    _bridge.tick(_record)


async def _open_session(config: ConnectionConfig, prompt_timeout: float) -> Dict[str, Any]:
    global _actor
    if _actor is not None and not _actor.finished and _actor.state is not ConnectionState.DISCONNECTED:
        raise HTTPException(status_code=409, detail=f"Session {_actor.name} is still {_actor.state.value}")
    await _close_session()
    actor = ConnectionActor(
        config,
        trust_store=_trust_store(),
        connection_factory=_connection_factory,
        prompt_timeout=prompt_timeout,
    )
    actor.start()
    _bridge.attach(actor)
    _actor = actor
    await actor.connect()
    return {"status": "connecting", "session": actor.name, "target": actor.description}


@app.get("/health")
async def health():
    return {"status": "ok", "time": time.time()}


@app.get("/ports")
async def ports():
    found = await asyncio.to_thread(list_serial_ports)
    return [port.to_dict() for port in found]


@app.get("/known-hosts")
async def known_hosts():
    return [record.to_dict() for record in _trust_store().records()]


@app.delete("/known-hosts")
async def forget_host(host: str = Query(...), port: int = Query(22, ge=1, le=65535)):
    return {"host": host, "port": port, "removed": _trust_store().forget(host, port)}


@app.post("/session/serial")
async def open_serial(
    path: str = Query(..., description="Serial device path"),
    baud: int = Query(115_200, gt=0),
    data_bits: int = Query(8),
    parity: str = Query("none"),
    stop_bits: float = Query(1),
    flow_control: str = Query("none", description="none, hardware or software"),
):
    try:
        config = SerialConfig.from_params(
            path,
            baud=baud,
            data_bits=data_bits,
            parity=parity,
            stop_bits=stop_bits,
            flow_control=flow_control,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid serial settings: {exc}")
    return await _open_session(config, HOST_KEY_PROMPT_TIMEOUT)


class SshRequest(BaseModel):
    host: str
    username: str
    port: int = 22
    password: Optional[str] = None
    key_path: Optional[str] = None
    passphrase: Optional[str] = None
    connect_timeout: Optional[float] = None
    prompt_timeout: float = HOST_KEY_PROMPT_TIMEOUT


@app.post("/session/ssh")
async def open_ssh(request: SshRequest):
    if (request.password is None) == (request.key_path is None):
        raise HTTPException(status_code=400, detail="Provide exactly one of password or key_path")
    auth = (
        PasswordAuth(request.password)
        if request.password is not None
        else KeyFileAuth(request.key_path, passphrase=request.passphrase)
    )
    try:
        config = SshConfig(
            host=request.host,
            username=request.username,
            auth=auth,
            port=request.port,
            connect_timeout=request.connect_timeout,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid SSH settings: {exc}")
    return await _open_session(config, request.prompt_timeout)


@app.post("/session/send")
async def send(
    text: str = Query("", description="Text to send"),
    line_ending: str = Query("none", description="lf, cr, crlf or none"),
    hex_data: Optional[str] = Query(None, alias="hex", description="Raw bytes as hex, sent instead of text"),
):
    actor = _require_actor()
    if line_ending not in LINE_ENDINGS:
        raise HTTPException(status_code=400, detail=f"Unknown line ending: {line_ending}")
    if hex_data is not None:
        try:
            payload = bytes.fromhex(hex_data)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid hex payload: {exc}")
    else:
        payload = text.encode("utf-8")
    payload += LINE_ENDINGS[line_ending]
    sent = await actor.send(payload)
    return {"sent": sent, "bytes_sent": actor.bytes_sent}


@app.post("/session/trust")
async def trust(decision: str = Query(..., description="accept, remember, reject or override")):
    actor = _require_actor()
    try:
        parsed = TrustDecision.parse(decision)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    pending = actor.pending_prompt()
    await actor.respond_trust(parsed)
    return {
        "decision": parsed.value,
        "prompt": event_to_dict(pending) if pending is not None else None,
    }


@app.post("/session/disconnect")
async def disconnect():
    if _actor is None:
        return {"status": "idle"}
    name = _actor.name
    await _close_session()
    return {"status": "closed", "session": name}


@app.get("/session/status")
async def status():
    if _actor is None or _actor.finished:
        return {"status": "idle"}
    pending = _actor.pending_prompt()
    return {
        "status": _actor.state.value,
        "session": _actor.name,
        "target": _actor.description,
        "bytes_sent": _actor.bytes_sent,
        "bytes_received": _actor.bytes_received,
        "pending_prompt": event_to_dict(pending) if pending is not None else None,
        "prompt_expires_in": _actor.prompt_time_left(),
    }


@app.get("/session/events")
async def recent_events(since: int = Query(0, ge=0)):
    return [payload for seq, payload in list(_history) if seq > since]


@app.websocket("/events")
async def events(ws: WebSocket):
    await ws.accept()
    last = _seq
    try:
        while True:
            await asyncio.sleep(EVENT_TICK_INTERVAL)
            for seq, payload in list(_history):
                if seq > last:
                    await ws.send_json(payload)
                    last = seq
    except WebSocketDisconnect:
        return
