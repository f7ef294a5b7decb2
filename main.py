"""FastAPI application for the clinic queue.

Reception registers arrivals and opens/closes consults; waiting-room
screens and patients' phones follow the queue through ``/api/queue``, the
``/api/events`` Server-Sent Events stream or the ``/ws/queue`` WebSocket.
Configuration comes from environment variables (see ``config.py``).

When ``ADMIN_PASS`` is set, every mutating endpoint requires it as the
``passcode`` query parameter.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from concurrent import futures
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from broadcast import QueueObserver
from config import EngineSettings, configure_logging
from errors import ConflictError, NotFoundError, PersistenceError, QueueError, ValidationError
from schemas import (
    ArrivalRequest,
    ConsultOutcome,
    ConsultRecordPayload,
    EntryPayload,
    PresenceRequest,
    TokenRequest,
)
from services import QueueService

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 15.0

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    PersistenceError: 503,
}


def status_for(exc: QueueError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


def _sse_frame(message: Dict[str, Any]) -> str:
    return f"data: {json.dumps(message)}\n\n"


async def queue_event_stream(service: QueueService, request: Any, heartbeat: float = HEARTBEAT_SECONDS):
    """Server-Sent Events frames: the current view, then every update.

    A heartbeat frame goes out whenever nothing changed for ``heartbeat``
    seconds; the stream ends once the client disconnects.
    """
    observer = QueueObserver(asyncio.get_running_loop())
    await run_in_threadpool(service.subscribe, observer)
    try:
        while not await request.is_disconnected():
            try:
                payload = await observer.next_view(timeout=heartbeat)
            except asyncio.TimeoutError:
                yield _sse_frame({"type": "heartbeat"})
                continue
            yield _sse_frame({"type": "queue_state", "data": payload})
    finally:
        service.unsubscribe(observer)


async def _forward_views(websocket: WebSocket, observer: QueueObserver) -> None:
    try:
        while True:
            payload = await observer.next_view()
            await websocket.send_json({"type": "queue_state", "data": payload})
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Stopped forwarding queue views: %s", e)


def create_app(
    service: Optional[QueueService] = None,
    settings: Optional[EngineSettings] = None,
) -> FastAPI:
    if settings is None:
        settings = service.settings if service is not None else EngineSettings.from_env()
    if service is None:
        service = QueueService.from_settings(settings)

    app = FastAPI(
        title=settings.clinic_name,
        description="Live queue for a single-doctor clinic",
        version="1.0.0",
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    @app.on_event("shutdown")
    def flush_relays() -> None:
        for relay in service.relays:
            try:
                relay.flush(timeout=5)
            except futures.TimeoutError as e:
                logger.warning("Queue relay did not drain before shutdown: %s", e)

    def require_passcode(passcode: Optional[str] = None) -> None:
        if settings.admin_passcode and passcode != settings.admin_passcode:
            raise HTTPException(status_code=401, detail="Invalid passcode")

    @app.get("/")
    def root() -> Dict[str, Any]:
        """Root endpoint with system status."""
        return {
            "service": settings.clinic_name,
            "status": "running",
            "version": "1.0.0",
            "endpoints": {
                "queue": "/api/queue",
                "events": "/api/events",
                "websocket": "/ws/queue",
            },
        }

    @app.get("/health")
    def health_check() -> Dict[str, Any]:
        return {
            "status": "healthy",
            "storage": service.snapshots.describe(),
            "redis": "connected" if service.relays else "unavailable",
            "subscribers": len(service.hub),
            "clinic_name": settings.clinic_name,
        }

    @app.get("/api/queue")
    def get_queue(query: Optional[str] = None) -> Any:
        """Current queue view, or a masked search when ``query`` is given."""
        if query is not None and query.strip():
            return service.search(query)
        return service.get_view().to_payload()

    @app.post("/api/appointments", response_model=EntryPayload, dependencies=[Depends(require_passcode)])
    def register_arrival(request: ArrivalRequest) -> EntryPayload:
        return EntryPayload.from_entry(service.register_arrival(request))

    @app.delete("/api/appointments", dependencies=[Depends(require_passcode)])
    def reset_day() -> Dict[str, bool]:
        service.reset_day()
        return {"ok": True}

    @app.put("/api/doctor/presence", dependencies=[Depends(require_passcode)])
    def set_doctor_presence(request: PresenceRequest) -> Dict[str, bool]:
        return {"doctorPresent": service.set_doctor_presence(request.present)}

    @app.post("/api/consult/start", response_model=EntryPayload, dependencies=[Depends(require_passcode)])
    def start_consult(request: TokenRequest) -> EntryPayload:
        return EntryPayload.from_entry(service.start_consult(request.token))

    @app.post("/api/consult/end", response_model=ConsultOutcome, dependencies=[Depends(require_passcode)])
    def end_consult(request: TokenRequest) -> ConsultOutcome:
        result = service.end_consult(request.token)
        return ConsultOutcome(
            entry=EntryPayload.from_entry(result.entry),
            duration_min=result.duration_min,
            average_consult_minutes=result.average_consult_minutes,
        )

    @app.post("/api/consult/reopen", response_model=EntryPayload, dependencies=[Depends(require_passcode)])
    def reopen_consult(request: TokenRequest) -> EntryPayload:
        return EntryPayload.from_entry(service.reopen_consult(request.token))

    @app.post("/api/consult/no-show", response_model=EntryPayload, dependencies=[Depends(require_passcode)])
    def mark_no_show(request: TokenRequest) -> EntryPayload:
        return EntryPayload.from_entry(service.mark_no_show(request.token))

    @app.get("/api/consults", response_model=List[ConsultRecordPayload], dependencies=[Depends(require_passcode)])
    def consult_history() -> List[ConsultRecordPayload]:
        return [ConsultRecordPayload.from_record(r) for r in service.consult_history()]

    @app.get("/api/events")
    async def queue_events(request: Request) -> StreamingResponse:
        return StreamingResponse(
            queue_event_stream(service, request),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )

    @app.websocket("/ws/queue")
    async def queue_socket(websocket: WebSocket) -> None:
        """Push channel for displays; a ``request_queue`` message re-sends the view."""
        await websocket.accept()
        observer = QueueObserver(asyncio.get_running_loop())
        await run_in_threadpool(service.subscribe, observer)
        sender = asyncio.create_task(_forward_views(websocket, observer))
        try:
            while True:
                message = await websocket.receive_text()
                if message.strip() == "request_queue":
                    await run_in_threadpool(service.resend_view, observer)
        except WebSocketDisconnect:
            logger.debug("Queue socket disconnected")
        finally:
            sender.cancel()
            service.unsubscribe(observer)

    logger.info(
        "Clinic queue ready (storage: %s, policy: %s, default consult: %s min)",
        service.snapshots.describe(),
        settings.consult_policy.value,
        settings.default_consult_minutes,
    )
    return app


_settings = EngineSettings.from_env()
configure_logging(_settings.log_level)
app = create_app(settings=_settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
