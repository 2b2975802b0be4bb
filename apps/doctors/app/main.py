from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from carebook_shared import (
    RequestIDMiddleware,
    add_standard_health,
    configure_cors,
    get_request_id,
    register_shutdown,
    register_startup,
    setup_json_logging,
)

from .config import get_settings
from .db import Base, get_engine, ping
from .errors import DomainError
from .routes import router
from .seed import seed_demo_data

_log = logging.getLogger("carebook.app")

app = FastAPI(title="Doctors API", version="0.2.0")
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, get_settings().allowed_origins)
add_standard_health(app, db_check=lambda: ping(get_engine()))


@app.exception_handler(DomainError)
async def _domain_error(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        _log.error("request failed: %s", exc.message, extra={"code": exc.code, "path": request.url.path})
    body = exc.to_dict()
    body["request_id"] = get_request_id()
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "detail": "invalid request",
            "code": "VALIDATION_ERROR",
            "details": {"errors": jsonable_encoder(exc.errors())},
            "request_id": get_request_id(),
        },
    )


@app.exception_handler(Exception)
async def _unhandled(request: Request, exc: Exception):
    _log.error("unhandled error", exc_info=exc, extra={"path": request.url.path})
    return JSONResponse(
        status_code=500, content={"detail": "internal error", "code": "INTERNAL", "request_id": get_request_id()}
    )


@register_startup(app)
def _startup():
    st = get_settings()
    if st.require_internal_secret and not st.internal_secret and not st.is_dev_like:
        raise RuntimeError("DOCTORS_INTERNAL_SECRET must be set when internal auth is required")
    missing = st.gateway_missing_keys()
    if missing:
        _log.warning("payment gateway not configured, checkout disabled", extra={"missing": missing})
    engine = get_engine()
    Base.metadata.create_all(engine)
    seed_demo_data(engine, st)
    _log.info("doctors service started", extra=st.public_summary())


@register_shutdown(app)
def _shutdown():
    get_engine().dispose()


app.include_router(router)
