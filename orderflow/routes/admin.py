from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from orderflow.engine import Engine
from orderflow.routes.deps import dump, get_engine

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/dlq")
async def dlq_list(
    limit: int = Query(default=100, ge=1, le=1000), engine: Engine = Depends(get_engine)
) -> JSONResponse:
    """Deliveries that exhausted their attempts, most recent first."""
    jobs = await engine.queue.dead_letters(limit=limit)
    return JSONResponse(content={"count": len(jobs), "jobs": [dump(job) for job in jobs]})


@router.post("/dlq/replay")
async def dlq_replay(
    limit: int = Query(default=100, ge=1, le=1000), engine: Engine = Depends(get_engine)
) -> JSONResponse:
    """
    Replay dead-lettered deliveries to the main queue with a fresh attempt budget.
    Returns number of deliveries replayed.
    """
    replayed = await engine.queue.replay_dead_letters(limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )
