import logging
import os
from collections.abc import Callable
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def add_standard_health(app: FastAPI, env_key: str = "ENV", db_check: Optional[Callable[[], None]] = None):
    """
    Register GET /health.

    When ``db_check`` is given it is called on every probe; any exception
    turns the response into a 503 with ``db: "down"``.
    """

    @app.get("/health")
    def _health():
        body = {
            "status": "ok",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
        }
        if db_check is None:
            return body
        try:
            db_check()
            body["db"] = "ok"
        except Exception:
            logger.warning("health db check failed", exc_info=True)
            body["status"] = "degraded"
            body["db"] = "down"
            return JSONResponse(status_code=503, content=body)
        return body
