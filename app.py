import asyncio
import logging
import secrets
from typing import Dict, List, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from wikirunner.config import DEFAULT_STEP_BUDGET, RunConfig
from wikirunner.embeddings import preload
from wikirunner.errors import FetchError, InvalidTransitionError, NavigationError
from wikirunner.models import SolverType
from wikirunner.navigator import Navigator
from wikirunner.wikipedia import WikipediaSource

logger = logging.getLogger(__name__)

app = FastAPI(title="Wiki Runner")

source = WikipediaSource()

# In-memory sessions (local only)
SESSIONS: Dict[str, Navigator] = {}
DRIVERS: Dict[str, asyncio.Task] = {}


def build_navigator() -> Navigator:
    return Navigator(source)


# -----------------------------
# API Models
# -----------------------------
class StartRequest(BaseModel):
    start_title: Optional[str] = None
    target_title: str
    solver: SolverType = SolverType.VECTORS
    model: Optional[str] = None
    api_key: Optional[str] = None
    max_steps: int = DEFAULT_STEP_BUDGET


def _failure(reason: str, status_code: int) -> JSONResponse:
    return JSONResponse({"failure_reason": reason}, status_code=status_code)


def _spawn_driver(session_id: str, navigator: Navigator) -> None:
    if navigator.driving:
        return
    task = asyncio.create_task(navigator.play())
    DRIVERS[session_id] = task
    task.add_done_callback(lambda t: _driver_done(session_id, t))


def _driver_done(session_id: str, task: asyncio.Task) -> None:
    if DRIVERS.get(session_id) is task:
        del DRIVERS[session_id]
    if not task.cancelled() and task.exception() is not None:
        logger.error("Driver for session %s crashed", session_id, exc_info=task.exception())


# -----------------------------
# API
# -----------------------------
@app.post("/api/start")
async def api_start(req: StartRequest):
    try:
        config = RunConfig(
            start=req.start_title,
            target=req.target_title,
            solver=req.solver,
            model=req.model,
            api_key=req.api_key,
            step_budget=req.max_steps,
        )
    except ValidationError as e:
        return _failure(str(e), 400)

    navigator = build_navigator()
    try:
        if config.solver is SolverType.VECTORS:
            # model load and first download block; keep them off the event loop
            await asyncio.to_thread(preload)
        await navigator.start(config)
    except NavigationError as e:
        return _failure(str(e), 400)

    sid = secrets.token_urlsafe(12)
    SESSIONS[sid] = navigator
    _spawn_driver(sid, navigator)
    logger.info("Session %s started", sid)

    return {"session_id": sid, **navigator.snapshot()}


@app.get("/api/runs/{session_id}")
async def api_run(session_id: str):
    navigator = SESSIONS.get(session_id)
    if navigator is None:
        return _failure("Invalid session_id. Start a new run.", 404)
    return {"session_id": session_id, **navigator.snapshot()}


@app.post("/api/runs/{session_id}/pause")
async def api_pause(session_id: str):
    navigator = SESSIONS.get(session_id)
    if navigator is None:
        return _failure("Invalid session_id. Start a new run.", 404)
    try:
        navigator.pause()
    except InvalidTransitionError as e:
        return _failure(str(e), 409)
    return {"session_id": session_id, **navigator.snapshot()}


@app.post("/api/runs/{session_id}/resume")
async def api_resume(session_id: str):
    navigator = SESSIONS.get(session_id)
    if navigator is None:
        return _failure("Invalid session_id. Start a new run.", 404)
    try:
        navigator.resume()
    except InvalidTransitionError as e:
        return _failure(str(e), 409)
    _spawn_driver(session_id, navigator)
    return {"session_id": session_id, **navigator.snapshot()}


@app.post("/api/runs/{session_id}/abort")
async def api_abort(session_id: str):
    navigator = SESSIONS.pop(session_id, None)
    DRIVERS.pop(session_id, None)
    if navigator is None:
        return _failure("Invalid session_id. Start a new run.", 404)
    navigator.abort()
    return {"session_id": session_id, **navigator.snapshot()}


@app.get("/api/random")
async def api_random():
    try:
        return {"title": await source.fetch_random_title()}
    except FetchError as e:
        return _failure(str(e), 502)


@app.get("/api/search")
async def api_search(q: str):
    try:
        results: List[str] = await source.search(q)
    except FetchError as e:
        return _failure(str(e), 502)
    return {"query": q, "results": results}


@app.get("/api/health")
async def api_health():
    driving = sum(1 for task in DRIVERS.values() if not task.done())
    return {"ok": True, "sessions": len(SESSIONS), "driving": driving}
