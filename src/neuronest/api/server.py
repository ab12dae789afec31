"""FastAPI application — a thin REST surface over the :class:`Orchestrator`.

Endpoints:
- connection control (connect / disconnect / synthetic mode)
- live values (current reading and prediction, device info)
- history (today, weekly summaries, weekly episode counts)
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Query, Request

from neuronest.affect.inference import state_info
from neuronest.api.middleware import setup_middleware
from neuronest.api.schemas import ConnectRequest, PredictionResponse, StatusResponse
from neuronest.config import Settings, get_settings
from neuronest.orchestrator import Orchestrator

logger = structlog.get_logger(__name__)


def _orchestrator(request: Request) -> Orchestrator:
    orchestrator: Orchestrator | None = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(503, "Pipeline not ready.")
    return orchestrator


def create_app(settings: Settings | None = None, orchestrator: Orchestrator | None = None) -> FastAPI:
    """Build the application; the orchestrator is created (or adopted) in the lifespan."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orch = orchestrator or Orchestrator(settings)
        await orch.start()
        app.state.orchestrator = orch
        logger.info("server.started", port=settings.api_port)

        yield  # ← application runs

        await orch.close()
        app.state.orchestrator = None
        logger.info("server.stopped")

    app = FastAPI(
        title="NeuroNest API",
        description="Wearable stress-monitoring telemetry: device link, classification and history.",
        version="0.1.0",
        lifespan=lifespan,
    )
    setup_middleware(app, settings)

    # ── System ────────────────────────────────────────────────

    @app.get("/health", tags=["system"])
    async def health(request: Request):
        orch = _orchestrator(request)
        return {"status": "ok", "connected": orch.status().is_connected, "synthetic": orch.synthetic_mode}

    @app.get("/status", response_model=StatusResponse, tags=["system"])
    async def status(request: Request):
        orch = _orchestrator(request)
        link = orch.status()
        return StatusResponse(
            link=link,
            connected=link.is_connected,
            synthetic=orch.synthetic_mode,
            connection_error=orch.connection_error.user_message if orch.connection_error else None,
            last_error=orch.last_error.user_message if orch.last_error else None,
            classifier=orch.classifier.info(),
            events_published=orch.bus.published_total,
        )

    # ── Connection ────────────────────────────────────────────

    @app.post("/connect", tags=["device"])
    async def connect(request: Request, req: ConnectRequest | None = None):
        """Probe the wearable and start polling; 502 when it cannot be reached."""
        orch = _orchestrator(request)
        req = req or ConnectRequest()
        link = await orch.connect(req.address, req.port)
        return link.model_dump(mode="json")

    @app.post("/disconnect", tags=["device"])
    async def disconnect(request: Request):
        link = await _orchestrator(request).disconnect()
        return link.model_dump(mode="json")

    @app.get("/device-info", tags=["device"])
    async def device_info(request: Request):
        info = await _orchestrator(request).refresh_device_info()
        if info is None:
            raise HTTPException(404, "No device information available.")
        return info.model_dump(mode="json")

    @app.post("/synthetic/start", tags=["device"])
    async def synthetic_start(request: Request):
        """Switch to generated readings (stored with ``synthetic=true``)."""
        link = await _orchestrator(request).start_synthetic_mode()
        return link.model_dump(mode="json")

    @app.post("/synthetic/stop", tags=["device"])
    async def synthetic_stop(request: Request):
        orch = _orchestrator(request)
        await orch.stop_synthetic_mode()
        return orch.status().model_dump(mode="json")

    # ── Live values ───────────────────────────────────────────

    @app.get("/reading", tags=["live"])
    async def reading(request: Request):
        current = _orchestrator(request).current_reading
        if current is None:
            raise HTTPException(404, "No reading received yet.")
        return current.model_dump(mode="json")

    @app.get("/prediction", response_model=PredictionResponse, tags=["live"])
    async def prediction(request: Request):
        current = _orchestrator(request).current_prediction
        if current is None:
            raise HTTPException(404, "No prediction available yet.")
        info = state_info(current.state)
        return PredictionResponse(
            prediction=current,
            description=info.description,
            recommendation=info.recommendation,
        )

    # ── History ───────────────────────────────────────────────

    @app.get("/history/today", tags=["history"])
    async def history_today(request: Request):
        results = await _orchestrator(request).get_today_history()
        return [r.model_dump(mode="json", exclude={"raw"}) for r in results]

    @app.get("/history/weekly", tags=["history"])
    async def history_weekly(
        request: Request,
        days: int = Query(7, ge=1, le=90),
        backfill: bool = Query(False, description="Fill empty days with flagged synthetic data."),
    ):
        summaries = await _orchestrator(request).get_weekly_summary(days, backfill_synthetic=backfill)
        return [s.model_dump(mode="json") for s in summaries]

    @app.get("/history/episodes", tags=["history"])
    async def history_episodes(request: Request, days: int = Query(7, ge=1, le=90)):
        counts = await _orchestrator(request).get_weekly_episodes(days)
        return [c.model_dump(mode="json") for c in counts]

    return app


app = create_app()
