import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from . import models
from .printing import update_job_status
from .ws import relay

log = logging.getLogger("tablepos.print")

router_ws = APIRouter()


def _apply_status(job_id: str, status: str, error: Optional[str]) -> str:
    with Session(models.engine) as s:
        return update_job_status(s, job_id, status, error).status


def _error_text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


@router_ws.websocket("/print/ws")
async def print_relay_ws(ws: WebSocket):
    """
    Long-lived channel to a print server. Frames are JSON:
    ``register`` -> ``registered``; ``print-status`` updates a job.
    A bad frame gets an ``error`` reply and never closes the channel.
    """
    await ws.accept()
    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
            except ValueError:
                await ws.send_json({"type": "error", "detail": "invalid json"})
                continue
            kind = msg.get("type") if isinstance(msg, dict) else None
            if kind == "register":
                relay.register(ws, str(msg.get("name") or "print-server"))
                await ws.send_json({"type": "registered", "success": True})
            elif kind == "print-status":
                job_id = str(msg.get("job_id") or "")
                try:
                    status = await run_in_threadpool(
                        _apply_status, job_id, str(msg.get("status") or ""), _error_text(msg.get("error"))
                    )
                except HTTPException as e:
                    await ws.send_json({"type": "error", "job_id": job_id, "detail": e.detail})
                    continue
                except Exception:
                    log.exception("print-status for job %s not recorded", job_id)
                    await ws.send_json({"type": "error", "job_id": job_id, "detail": "status not recorded"})
                    continue
                await relay.broadcast({"type": "print-status", "job_id": job_id, "status": status})
            else:
                await ws.send_json({"type": "error", "detail": "unknown message type"})
    except WebSocketDisconnect:
        pass
    finally:
        relay.drop(ws)


@router_ws.websocket("/pos/ws")
async def pos_clients_ws(ws: WebSocket):
    await ws.accept()
    relay.clients.append(ws)
    try:
        await ws.send_json({"type": "hello", "print_server": relay.connected})
        while True:
            await ws.receive_text()  # keep alive
    except WebSocketDisconnect:
        pass
    finally:
        relay.drop(ws)
