import uuid
from contextvars import ContextVar

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

_rid_ctx: ContextVar[str] = ContextVar("request_id", default="")

# Client supplied ids are capped so they cannot bloat log lines.
MAX_ID_LENGTH = 64


def get_request_id() -> str:
    """Current request id; background tasks get a fresh one on first use."""
    rid = _rid_ctx.get()
    if not rid:
        rid = uuid.uuid4().hex
        _rid_ctx.set(rid)
    return rid


class RequestIDMiddleware:
    """
    Plain ASGI middleware so websocket sessions get an id too: every log
    line written while serving a relay or till socket carries the id the
    peer connected with.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID") -> None:
        self.app = app
        self.header_name = header_name

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return
        rid = (Headers(scope=scope).get(self.header_name) or "")[:MAX_ID_LENGTH] or uuid.uuid4().hex
        _rid_ctx.set(rid)

        async def send_with_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                if self.header_name not in headers:
                    headers.append(self.header_name, rid)
            await send(message)

        await self.app(scope, receive, send_with_id)
