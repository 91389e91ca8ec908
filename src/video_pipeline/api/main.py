from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from databases import Database
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketDisconnect

from video_pipeline.config import configure_logging, resolve_config
from video_pipeline.errors import AuthorizationError, PipelineError
from video_pipeline.models import CONNECTED, PipelineConfig
from video_pipeline.provider.client import Readiness
from video_pipeline.queue.models import JobSnapshot
from video_pipeline.realtime.auth import TokenVerifier, extract_token
from video_pipeline.realtime.base import frame
from video_pipeline.realtime.redis_fanout import RedisRelay
from video_pipeline.realtime.registry import LocalBroadcaster
from video_pipeline.services import PipelineServices
from video_pipeline.status import StatusService, VideoStatusResponse, VideoStatusView

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[PipelineConfig] = None,
    services: Optional[PipelineServices] = None,
) -> FastAPI:
    """Build the API. ``services`` is built at startup when not given."""
    config = config or (services.config if services else resolve_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            app.state.services = PipelineServices(config)
        svc: PipelineServices = app.state.services
        await asyncio.to_thread(svc.store.create_tables)

        database = Database(config.database.url)
        await database.connect()
        app.state.database = database
        app.state.status = StatusService(
            database, svc.queue, config.queue.job_name, config.queue.lookup_timeout_s
        )

        if isinstance(svc.broadcaster, LocalBroadcaster):
            svc.broadcaster.bind(asyncio.get_running_loop())

        if config.realtime.backend == "redis":
            app.state.relay = RedisRelay.from_url(
                config.realtime.redis_url,
                svc.registry,
                config.realtime.channel,
                config.realtime.presence_key,
            )
            await app.state.relay.start()

        worker = None
        if config.worker.embedded:
            worker = svc.build_worker()
            worker.start()

        yield

        if worker is not None:
            await asyncio.to_thread(worker.stop)
        if app.state.relay is not None:
            await app.state.relay.stop()
            app.state.relay = None
        if isinstance(svc.broadcaster, LocalBroadcaster):
            svc.broadcaster.unbind()
        await database.disconnect()
        if owned:
            svc.close()
            app.state.services = None

    app = FastAPI(title="Video Pipeline API", lifespan=lifespan)
    app.state.config = config
    app.state.services = services
    app.state.relay = None
    app.state.verifier = TokenVerifier.from_config(config.auth)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})

    # --- API ENDPOINTS ---

    @app.get("/")
    async def root():
        return {"message": "Video Pipeline API", "docs": "/docs", "health": "/health"}

    @app.get("/health")
    async def health_check(request: Request):
        svc: PipelineServices = request.app.state.services
        try:
            queue_counts = await asyncio.to_thread(svc.queue.counts)
        except PipelineError as e:
            queue_counts = {"error": e.message}
        return {
            "status": "ok" if "error" not in queue_counts else "degraded",
            "queue": queue_counts,
            "providerToken": svc.credentials.has_token,
            "connections": len(svc.registry),
        }

    # --- INGEST ---

    @app.post("/chapters/{chapter_id}/videos", status_code=201)
    async def upload_video(
        request: Request,
        chapter_id: str,
        file: UploadFile = File(...),
        title: str = Form(...),
        description: Optional[str] = Form(None),
        orderIndex: int = Form(0),  # noqa: N803
        duration: Optional[int] = Form(None),
    ):
        """Upload to the provider, create the PENDING video and queue processing."""
        svc: PipelineServices = request.app.state.services
        result = await asyncio.to_thread(
            svc.ingest.submit,
            chapter_id,
            file.file,
            title,
            description,
            orderIndex,
            duration,
            file.size,
        )
        return {"video": VideoStatusView.from_record(result.video), "jobId": result.job_id}

    @app.post("/videos/{video_id}/process", status_code=202)
    async def resubmit_video(request: Request, video_id: str):
        """Queue a PENDING video that has no job (e.g. after a broker outage)."""
        svc: PipelineServices = request.app.state.services
        result = await asyncio.to_thread(svc.ingest.resubmit, video_id)
        return {"video": VideoStatusView.from_record(result.video), "jobId": result.job_id}

    # --- STATUS ---

    @app.get("/videos/{video_id}/status", response_model=VideoStatusResponse)
    async def get_video_status(request: Request, video_id: str):
        return await request.app.state.status.get_status(video_id)

    @app.get("/chapters/{chapter_id}/videos/status", response_model=List[VideoStatusResponse])
    async def list_video_statuses(request: Request, chapter_id: str):
        return await request.app.state.status.list_statuses(chapter_id)

    @app.get("/jobs/{job_id}", response_model=JobSnapshot)
    async def get_job(request: Request, job_id: str):
        svc: PipelineServices = request.app.state.services
        job = await asyncio.to_thread(svc.queue.get_job, job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    # --- PROVIDER ---

    @app.get("/provider/auth")
    async def provider_auth(request: Request):
        svc: PipelineServices = request.app.state.services
        return {"authUrl": svc.credentials.authorization_url()}

    @app.get("/provider/callback")
    async def provider_callback(request: Request, code: str):
        svc: PipelineServices = request.app.state.services
        await asyncio.to_thread(svc.provider.exchange_code, code)
        return {"status": "success", "message": "Provider authentication completed"}

    @app.get("/provider/videos/{asset_id}/readiness", response_model=Readiness)
    async def provider_readiness(request: Request, asset_id: str):
        svc: PipelineServices = request.app.state.services
        return await asyncio.to_thread(svc.provider.check_readiness, asset_id)

    # --- WEBSOCKET ---

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        svc: PipelineServices = websocket.app.state.services
        relay: Optional[RedisRelay] = websocket.app.state.relay
        token = extract_token(
            websocket.headers, websocket.query_params, websocket.cookies, config.auth.cookie_names
        )
        try:
            identity = websocket.app.state.verifier.verify(token)
        except AuthorizationError as e:
            logger.warning("WebSocket connection rejected: %s", e.message)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
            return

        await websocket.accept()
        await svc.registry.register(identity.userId, websocket)
        if relay is not None:
            await relay.mark_online(identity.userId)

        try:
            await websocket.send_json(
                frame(CONNECTED, {"status": "success", "message": "Connected to status updates"})
            )
            while True:
                text = await websocket.receive_text()
                try:
                    message = json.loads(text)
                except ValueError:
                    message = {"type": text.strip()}
                if isinstance(message, dict) and message.get("type") == "ping":
                    await websocket.send_json(frame("pong", {}))
        except WebSocketDisconnect:
            pass
        except RuntimeError as e:
            # Socket closed by a newer connection of the same user
            logger.debug("WebSocket for %s closed: %s", identity.userId, e)
        finally:
            removed = await svc.registry.unregister(identity.userId, websocket)
            if removed and relay is not None:
                await relay.mark_offline(identity.userId)

    return app


def build_app() -> FastAPI:
    config = resolve_config()
    configure_logging(config)
    return create_app(config)
