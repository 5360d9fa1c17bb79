from __future__ import annotations

import logging
import threading
import time
from typing import Any, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Request, Response

from dealmaker import __version__
from dealmaker.metrics import format_prometheus, metrics_enabled, snapshot


log = logging.getLogger("dealmaker.api")

router = APIRouter()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _loop_status(request: Request) -> Optional[dict[str, Any]]:
    loop = getattr(request.app.state, "deal_loop", None)
    if loop is None:
        return None
    return loop.status()


@router.get("/health")
def health(request: Request) -> dict[str, object]:
    st = _loop_status(request)
    return {
        "ok": True,
        "service": "dealmaker",
        "version": __version__,
        "ts_ms": _now_ms(),
        "running": None if st is None else bool(st.get("running")),
        "rounds": None if st is None else int(st.get("rounds") or 0),
    }


@router.get("/v1/status")
def v1_status(request: Request) -> dict[str, object]:
    st = _loop_status(request)
    snap = snapshot()
    return {
        "ok": st is not None,
        "ts_ms": _now_ms(),
        "loop": st,
        "counters": snap["counters"],
        "gauges": snap["gauges"],
    }


@router.get("/metrics")
def metrics() -> Response:
    """Prometheus-style metrics. Disabled unless DEALMAKER_METRICS_ENABLED=1."""
    if not metrics_enabled():
        return Response(status_code=404, content="not_found\n", media_type="text/plain")
    return Response(content=format_prometheus(), media_type="text/plain")


def create_app(deal_loop: Any = None) -> FastAPI:
    """Read-only status API over a running DealLoop (or none, for tests)."""
    app = FastAPI(title="dealmaker status", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.deal_loop = deal_loop
    app.include_router(router)
    return app


class StatusServer:
    """Serve the status API from a daemon thread."""

    def __init__(self, app: FastAPI, *, host: str, port: int) -> None:
        cfg = uvicorn.Config(app, host=host, port=int(port), log_level="warning")
        self._server = uvicorn.Server(cfg)
        self._t: Optional[threading.Thread] = None
        self.host = host
        self.port = int(port)

    def start(self) -> None:
        if self._t is not None:
            return
        self._t = threading.Thread(target=self._server.run, name="dealmaker-status", daemon=True)
        self._t.start()

    def stop(self) -> None:
        self._server.should_exit = True
        t = self._t
        self._t = None
        if t is not None:
            t.join(timeout=5.0)
