"""Control API routes: data reset and the simulator of remote participants."""

from fastapi import APIRouter, HTTPException

from sim import ISim

from ...app import IApplication
from ...logging_config import get_logger
from ..schemas import StatusResponse

logger = get_logger(__name__)

# Registered by main.py before the app starts
_sim: ISim | None = None


def set_sim_instance(sim: ISim | None) -> None:
    global _sim
    _sim = sim


def get_sim_instance() -> ISim | None:
    return _sim


def _require_sim() -> ISim:
    if _sim is None:
        raise HTTPException(status_code=404, detail="Simulator is not configured")
    return _sim


def create_control_router(app: IApplication) -> APIRouter:
    """Create control router."""
    router = APIRouter(prefix="/api/control", tags=["control"])

    @router.post("/reset", response_model=StatusResponse)
    async def reset_data() -> dict:
        """Stop the simulator and forget all conversations."""
        try:
            if _sim is not None:
                await _sim.stop()
            await app.reset()
        except Exception as e:
            logger.error("Reset failed: %s", e, exc_info=True)
            raise HTTPException(status_code=500, detail=str(e))
        return {"status": "ok"}

    @router.get("/sim", response_model=StatusResponse)
    async def sim_status() -> dict:
        sim = _require_sim()
        return {"status": "running" if getattr(sim, "running", False) else "stopped"}

    @router.post("/sim/start", response_model=StatusResponse)
    async def start_sim() -> dict:
        """Start the scripted activity of teachers and students."""
        sim = _require_sim()
        try:
            await sim.start()
        except RuntimeError as e:
            # Not bound to a backend yet
            raise HTTPException(status_code=409, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"status": "ok"}

    @router.post("/sim/stop", response_model=StatusResponse)
    async def stop_sim() -> dict:
        sim = _require_sim()
        try:
            await sim.stop()
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"status": "ok"}

    return router
