"""
FastAPI server that exposes the answer pipeline as an SSE endpoint.

Run:
    cd backend/docbot
    uvicorn server:app --reload --port 8000
"""

import asyncio
import json
import logging
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from bot_config import load_config
from events import CallbackEventEmitter, COMPONENT_PIPELINE
from pipeline import build_augmenter, build_pipeline, build_reasoner
from turns import Role, Turn

logger = logging.getLogger(__name__)

ERROR_MESSAGE = "There was an error processing your request. Please try again later."


class AskRequest(BaseModel):
    question: str
    history: list[dict[str, str]] = []  # earlier {"role", "content"} turns
    use_retrieval: bool = False


def _pipeline_from_env() -> Any:
    config = load_config()
    missing = config.missing(need_discord=False)
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
    reasoner = build_reasoner(config)
    return build_pipeline(reasoner, build_augmenter(config, reasoner))


def _event(event_type: str, step: str, message: str, data: dict | None = None) -> dict:
    return {
        "component": COMPONENT_PIPELINE,
        "type": event_type,
        "step": step,
        "message": message,
        "data": data or {},
        "timestamp": time.time(),
    }


def create_app(pipeline: Any = None) -> FastAPI:
    """Build the app; the pipeline is built from the environment on first use if not given."""
    app = FastAPI(title="Docs Assistant API")
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.post("/ask")
    async def ask(req: AskRequest, request: Request):
        queue: asyncio.Queue = asyncio.Queue()
        emitter = CallbackEventEmitter(queue.put_nowait)

        async def run_pipeline():
            try:
                if request.app.state.pipeline is None:
                    request.app.state.pipeline = _pipeline_from_env()
                turns = [Turn.user(req.question)]
                if req.history:
                    turns = [Turn(Role(t["role"]), t["content"]) for t in req.history] + turns
                result = await request.app.state.pipeline.ainvoke({
                    "turns": turns,
                    "use_retrieval": req.use_retrieval,
                    "emitter": emitter,
                })
                queue.put_nowait(_event("complete", "done", "Answer complete",
                                        {"answer": result.get("answer", "")}))
            except Exception:
                logger.exception("Pipeline error")
                queue.put_nowait(_event("error", "fatal", ERROR_MESSAGE))
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(run_pipeline())

        async def event_stream():
            try:
                while True:
                    event = await queue.get()
                    if event is None:
                        break
                    yield f"data: {json.dumps(event)}\n\n"
            finally:
                task.cancel()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
