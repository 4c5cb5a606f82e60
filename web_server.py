# Load environment variables FIRST (before any other imports)
from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from config import DEFAULT_CENTER
from core.models import NetworkProfile
from main import Pipeline, build_pipeline

# Silence verbose loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logger = logging.getLogger("web_server")


class RefreshRequest(BaseModel):
    force: bool = False
    clear_cache: bool = False


class CacheClearRequest(BaseModel):
    namespaces: Optional[list[str]] = None


def _client_profile(request: Request, pipeline: Pipeline) -> Optional[NetworkProfile]:
    """Network profile from Client Hints, if the client sent any."""
    hints = {"ect", "downlink", "rtt", "save-data"}
    if not any(h in request.headers for h in hints):
        return None
    return NetworkProfile.from_headers(request.headers, default=pipeline.scheduler.sample_network())


def create_app(pipeline: Optional[Pipeline] = None, start_background: bool = True) -> FastAPI:
    app = FastAPI(title="SG Weather Pipeline")
    app.state.pipeline = pipeline

    def get_pipeline() -> Pipeline:
        if app.state.pipeline is None:
            app.state.pipeline = build_pipeline()
        return app.state.pipeline

    @app.on_event("startup")
    async def startup_event():
        """Start the adaptive background refresh."""
        if start_background:
            get_pipeline().scheduler.start(run_immediately=True)

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.pipeline is not None:
            app.state.pipeline.scheduler.close()

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        p = get_pipeline()
        return {
            "status": "ok",
            "scheduler_state": p.scheduler.state.value,
            "scheduler_running": p.scheduler.running,
            "registry": p.registry.get_health_status(),
        }

    @app.get("/api/regional")
    async def regional() -> Dict[str, Any]:
        p = get_pipeline()
        p.synthesizer.refresh_ages()
        dataset = p.synthesizer.dataset
        return {
            "regions": p.synthesizer.outbound(),
            "source": dataset.source if dataset else None,
            "last_update": dataset.timestamp.isoformat() if dataset else None,
        }

    @app.get("/api/regional/{region_id}")
    async def regional_one(region_id: str) -> Dict[str, Any]:
        p = get_pipeline()
        if region_id not in p.synthesizer.regions:
            raise HTTPException(status_code=404, detail=f"Unknown region: {region_id}")
        p.synthesizer.refresh_ages()
        composite = p.synthesizer.get(region_id)
        if composite is None:
            raise HTTPException(status_code=503, detail="No data loaded yet")
        return p.synthesizer.to_outbound(composite)

    @app.get("/api/summary")
    async def summary() -> Dict[str, Any]:
        p = get_pipeline()
        p.synthesizer.refresh_ages()
        return {
            "island": p.synthesizer.island_summary(),
            "consistency": p.synthesizer.consistency_report(),
        }

    @app.post("/api/refresh")
    async def refresh(request: Request, body: Optional[RefreshRequest] = None) -> Dict[str, Any]:
        """Manual refresh; force is rate limited by the scheduler."""
        p = get_pipeline()
        body = body or RefreshRequest()
        profile = _client_profile(request, p)
        if profile is not None:
            p.scheduler.set_network_profile(profile)
        logger.info(f"Manual refresh (force={body.force})")
        if body.force:
            result = await p.scheduler.force_refresh(clear_cache=body.clear_cache)
        else:
            result = await p.scheduler.refresh()
        if result.status == "unavailable":
            raise HTTPException(status_code=503, detail=result.error)
        return {
            "result": result.to_dict(),
            "regions": p.synthesizer.outbound(),
            "refresh_interval_s": p.scheduler.refresh_interval(profile),
            "timeout_s": p.scheduler.timeout_for(profile),
        }

    @app.post("/api/cache/clear")
    async def cache_clear(body: Optional[CacheClearRequest] = None) -> Dict[str, Any]:
        p = get_pipeline()
        namespaces = body.namespaces if body else None
        return p.scheduler.clear_caches(namespaces).to_dict()

    @app.get("/api/metrics")
    async def metrics() -> Dict[str, Any]:
        return dict(get_pipeline().scheduler.metrics)

    @app.get("/api/stations")
    async def stations(
        metric: Optional[str] = None,
        max_stations: Optional[int] = None,
        priority_only: bool = False,
    ) -> Dict[str, Any]:
        p = get_pipeline()
        selected = p.registry.get_optimal_stations(
            metric=metric, max_stations=max_stations, priority_only=priority_only
        )
        return {"metric": metric or "all", "stations": [s.to_dict() for s in selected]}

    @app.get("/api/stations/nearby")
    async def stations_nearby(
        lat: float = DEFAULT_CENTER.lat,
        lng: float = DEFAULT_CENTER.lng,
        radius_km: float = 10.0,
        metric: Optional[str] = None,
    ) -> Dict[str, Any]:
        p = get_pipeline()
        hits = p.registry.get_stations_with_distance((lat, lng), radius_km, metric)
        return {
            "center": {"lat": lat, "lng": lng},
            "stations": [
                {**s.to_dict(), "distance_km": round(d, 3)} for s, d in hits
            ]
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s | %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8000)
