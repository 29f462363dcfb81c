# flow_runtime/main.py
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from . import nodes  # noqa: F401  registers the built-in node types
from .config import configure_logging, get_settings
from .errors import InvalidStateError, RunNotFoundError, ValidationError
from .events import SSE_DONE
from .models import CheckpointDecision, Decision, RunRequest, RunSnapshot
from .runtime import FlowRuntime

logger = logging.getLogger(__name__)

router = APIRouter()


class RunCreated(BaseModel):
    run_id: str


class DecisionPayload(BaseModel):
    node_id: str
    decision: Decision
    user_input: Optional[str] = None


def get_runtime(request: Request) -> FlowRuntime:
    return request.app.state.runtime


@router.post("/runs", response_model=RunCreated, status_code=201)
async def create_run(payload: RunRequest, runtime: FlowRuntime = Depends(get_runtime)):
    run_id = runtime.start_run(payload)
    return {"run_id": run_id}


@router.get("/runs/{run_id}", response_model=RunSnapshot)
async def get_run(run_id: str, runtime: FlowRuntime = Depends(get_runtime)):
    return runtime.get(run_id)


@router.post("/runs/{run_id}/checkpoint", response_model=RunSnapshot)
async def decide_checkpoint(
    run_id: str, payload: DecisionPayload, runtime: FlowRuntime = Depends(get_runtime)
):
    decision = CheckpointDecision(run_id=run_id, **payload.model_dump())
    return runtime.resolve_checkpoint(decision)


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str, runtime: FlowRuntime = Depends(get_runtime)):
    cancelled = await runtime.cancel(run_id)
    return {"run_id": run_id, "cancelled": cancelled, "status": runtime.get(run_id).status}


@router.post("/runs/{run_id}/archive", response_model=RunSnapshot)
async def archive_run(run_id: str, runtime: FlowRuntime = Depends(get_runtime)):
    return runtime.archive(run_id)


async def _sse(runtime: FlowRuntime, run_id: str, after: int, keepalive: float) -> AsyncGenerator[str, None]:
    events = runtime.subscribe(run_id, after).__aiter__()
    pending: Optional[asyncio.Future] = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(events.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=keepalive)
            if not done:
                yield ": keep-alive\n\n"
                continue
            try:
                event = pending.result()
            except StopAsyncIteration:
                break
            finally:
                pending = None
            yield event.to_sse()
        yield SSE_DONE
    finally:
        if pending is not None:
            pending.cancel()


@router.get("/runs/{run_id}/events")
async def stream_events(
    run_id: str,
    after: int = 0,
    last_event_id: Optional[str] = Header(None),
    runtime: FlowRuntime = Depends(get_runtime),
):
    if not runtime.known(run_id):
        raise RunNotFoundError(run_id)
    if last_event_id and last_event_id.isdigit():
        after = max(after, int(last_event_id))
    keepalive = runtime.settings.SSE_KEEPALIVE_SECONDS
    return StreamingResponse(
        _sse(runtime, run_id, after, keepalive),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/handlers")
async def list_handlers(runtime: FlowRuntime = Depends(get_runtime)):
    return {"handlers": runtime.registry.types()}


def create_app(runtime: Optional[FlowRuntime] = None) -> FastAPI:
    settings = runtime.settings if runtime is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        app.state.runtime = runtime or FlowRuntime(settings=settings)
        logger.info("flow runtime ready; node types: %s", ", ".join(app.state.runtime.registry.types()))
        yield
        await app.state.runtime.shutdown()

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    app.include_router(router)

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": exc.problems})

    @app.exception_handler(InvalidStateError)
    async def invalid_state(request: Request, exc: InvalidStateError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(RunNotFoundError)
    async def run_not_found(request: Request, exc: RunNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("flow_runtime.main:app", host="0.0.0.0", port=8000, reload=True)
