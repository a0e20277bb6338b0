from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import CORS_ORIGINS, LOG_LEVEL, OSM_OUTPUT_DIR, OSM_UPLOAD_DIR
from .errors import ConversionError, NotFound
from .jobs import TRACKER, WS_MANAGER, ConversionTracker, get_tracker, job_event
from .routes import router

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(title="DrafTeam OSM to DXF Converter")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def _startup() -> None:
    OSM_UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    OSM_OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
    await TRACKER.recover()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await TRACKER.shutdown()


@app.exception_handler(ConversionError)
async def _conversion_error(request: Request, exc: ConversionError) -> JSONResponse:
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


app.include_router(router)


@app.websocket("/ws/osm/jobs/{job_id}")
async def job_ws(websocket: WebSocket, job_id: str, tracker: ConversionTracker = Depends(get_tracker)) -> None:
    try:
        await tracker.get_status(job_id)
    except NotFound as exc:
        await websocket.accept()
        await websocket.send_json({"event": "error", "message": exc.message})
        await websocket.close()
        return
    await WS_MANAGER.connect(job_id, websocket)
    # Snapshot after subscribing so no change falls between the two.
    await websocket.send_json(job_event(await tracker.get_status(job_id)))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await WS_MANAGER.disconnect(job_id, websocket)
