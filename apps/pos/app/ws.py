import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import WebSocket

log = logging.getLogger("tablepos.print")


class PrintRelay:
    """
    In-process registry of websocket peers.

    ``relays`` are print-server processes that own the physical printer
    connections; jobs go to the first one that accepts the frame. ``clients``
    are till screens that only receive change notifications.
    """

    def __init__(self) -> None:
        self.relays: List[WebSocket] = []
        self.relay_names: Dict[int, str] = {}
        self.clients: List[WebSocket] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wake: Optional[asyncio.Event] = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._wake = asyncio.Event()

    def unbind(self) -> None:
        self._loop = None
        self._wake = None

    @property
    def connected(self) -> bool:
        return bool(self.relays)

    def register(self, ws: WebSocket, name: str) -> None:
        if ws not in self.relays:
            self.relays.append(ws)
        self.relay_names[id(ws)] = name
        log.info("print server registered: %s", name)
        self.notify()

    def drop(self, ws: WebSocket) -> None:
        if ws in self.relays:
            self.relays.remove(ws)
            log.info("print server disconnected: %s", self.relay_names.pop(id(ws), "?"))
        if ws in self.clients:
            self.clients.remove(ws)

    def notify(self) -> None:
        """Wake the delivery worker; safe to call from request threads."""
        loop, wake = self._loop, self._wake
        if loop is None or wake is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(wake.set)
        except RuntimeError:
            # loop already shut down
            pass

    async def wait(self, timeout: float) -> None:
        if self._wake is None:
            await asyncio.sleep(timeout)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def send_job(self, msg: Dict[str, Any]) -> bool:
        text = json.dumps(msg)
        for ws in list(self.relays):
            try:
                await ws.send_text(text)
                return True
            except Exception as e:
                log.warning("relay send failed, dropping socket: %s", e)
                self.drop(ws)
        return False

    async def broadcast(self, msg: Dict[str, Any]) -> None:
        text = json.dumps(msg)
        for ws in list(self.clients):
            try:
                await ws.send_text(text)
            except Exception:
                self.drop(ws)

    def queue_broadcast(self, msg: Dict[str, Any]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed() or not self.clients:
            return
        try:
            loop.call_soon_threadsafe(lambda: loop.create_task(self.broadcast(msg)))
        except RuntimeError:
            pass


relay = PrintRelay()
