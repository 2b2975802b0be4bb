import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_rid_ctx: ContextVar[str] = ContextVar("request_id", default="")

# Upstream ids longer than this are replaced; they end up in every log line.
_MAX_INBOUND_LEN = 128


def get_request_id() -> str:
    rid = _rid_ctx.get()
    if not rid:
        rid = uuid.uuid4().hex
        _rid_ctx.set(rid)
    return rid


class RequestIDMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        rid = (request.headers.get(self.header_name) or "").strip()
        if not rid or len(rid) > _MAX_INBOUND_LEN:
            rid = uuid.uuid4().hex
        token = _rid_ctx.set(rid)
        try:
            response: Response = await call_next(request)
        finally:
            _rid_ctx.reset(token)
        response.headers.setdefault(self.header_name, rid)
        return response
