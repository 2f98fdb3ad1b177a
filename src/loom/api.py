from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket
from pydantic import BaseModel

from .errors import LoomError
from .logs import LogBroadcaster, Subscription
from .scheduler import Scheduler
from .watcher import Watcher

# -------------------- Schemas --------------------

class StepResponse(BaseModel):
    name: str
    run: str

class JobResponse(BaseModel):
    name: str
    state: str
    needs: list[str]
    runs_on: str
    steps: list[StepResponse]

class StatusResponse(BaseModel):
    run_id: int
    status: str
    running: list[str]
    completed: list[str]
    jobs: list[JobResponse]

class LogResponse(BaseModel):
    job: str
    step: str
    stream: str
    line: str
    seq: int
    timestamp: datetime

class StartResponse(BaseModel):
    dispatched: list[str]

class StopResponse(BaseModel):
    cancelled: list[str]

class ReloadRequest(BaseModel):
    file_path: Optional[str] = None

class ReloadResponse(BaseModel):
    success: bool
    message: str

# -------------------- App --------------------

def create_app(scheduler: Scheduler, logs: LogBroadcaster, watcher: Optional[Watcher] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # The scheduler actor must live on the server's event loop
        owned = not scheduler.started
        await scheduler.start()
        yield
        if owned:
            await scheduler.close()

    app = FastAPI(title="Loom Status API", lifespan=lifespan)

    @app.get("/api/status", response_model=StatusResponse)
    async def status():
        return await scheduler.snapshot()

    @app.get("/api/jobs", response_model=list[JobResponse])
    async def list_jobs():
        return [j.to_dict() for j in await scheduler.get_all_jobs()]

    @app.get("/api/jobs/{name}/status", response_model=JobResponse)
    async def job_status(name: str):
        try:
            job = await scheduler.get_job_status(name)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Job not found: {name}")
        return job.to_dict()

    @app.get("/api/jobs/{name}/logs", response_model=list[LogResponse])
    async def job_logs(name: str, limit: int = 100):
        return [e.to_dict() for e in logs.recent(name, limit=limit)]

    @app.post("/api/run/start", response_model=StartResponse)
    async def start_run():
        return StartResponse(dispatched=await scheduler.start_run())

    @app.post("/api/run/stop", response_model=StopResponse)
    async def stop_run():
        return StopResponse(cancelled=await scheduler.stop_run())

    @app.post("/api/workflows/reload", response_model=ReloadResponse)
    async def reload(req: Optional[ReloadRequest] = None):
        if watcher is None:
            raise HTTPException(status_code=409, detail="No workflow source configured")
        path = req.file_path if req is not None else None
        if not await watcher.reload(path):
            err = watcher.last_error
            detail = str(err) if isinstance(err, LoomError) else f"Failed to read workflow: {err}"
            raise HTTPException(status_code=422, detail=detail)
        jobs = await scheduler.get_all_jobs()
        return ReloadResponse(success=True, message=f"Workflow reloaded with {len(jobs)} jobs")

    @app.websocket("/ws/logs")
    async def stream_logs(websocket: WebSocket, job: Optional[str] = None):
        await websocket.accept()

        async def forward(sub: Subscription) -> None:
            async for event in sub:
                await websocket.send_json(event.to_dict())

        async def until_disconnect() -> None:
            while (await websocket.receive())["type"] != "websocket.disconnect":
                pass

        # Whichever ends first (client gone, send failed) releases the subscription
        with logs.subscribe(job) as sub:
            tasks = [asyncio.ensure_future(forward(sub)), asyncio.ensure_future(until_disconnect())]
            try:
                await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

    return app
