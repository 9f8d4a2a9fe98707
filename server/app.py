"""
FastAPI server for the calling bot.

Endpoints:
- POST {callback}: Signaling notification webhook
- GET {callback}/status: Active call count
- POST {callback}/calls/{call_id}/hangup: Administrative hangup
- POST {callback}/calls/{call_id}/speech: Recognized speech delivery
- POST {callback}/calls/{call_id}/say: Operator speech
- GET /healthz: Liveness probe
- GET /metrics: JSON metrics
"""

import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
import structlog
import uvicorn

from src.callbot.config import Config, ConfigError, get_config, init_config
from src.callbot.models import CallbackNotificationCollection, SayRequest, SpeechEvent
from src.callbot.orchestrator import CallOrchestrator, create_orchestrator


# Initialize structured logging
def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set log level
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    notification_batches: int = 0
    speech_events: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "notification_batches": self.notification_batches,
            "speech_events": self.speech_events,
            "errors": self.errors,
        }


def get_orchestrator(request: Request) -> CallOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return orchestrator


def _build_router(callback_path: str, metrics: ServerMetrics) -> APIRouter:
    router = APIRouter(prefix=callback_path)

    @router.post("", status_code=202)
    async def handle_callback(
        notifications: CallbackNotificationCollection,
        request: Request,
        background_tasks: BackgroundTasks,
    ) -> Dict[str, Any]:
        """Signaling webhook. The batch is processed in order after responding."""
        orchestrator = get_orchestrator(request)
        batch = [n for n in (notifications.value or []) if n is not None]
        metrics.notification_batches += 1
        logger.info("Received notifications", count=len(batch))

        if batch:
            background_tasks.add_task(orchestrator.process_notifications, batch)
        return {"accepted": len(batch)}

    @router.get("/status")
    async def get_status(request: Request) -> Dict[str, Any]:
        orchestrator = get_orchestrator(request)
        return {
            "status": "operational",
            "activeCalls": orchestrator.get_active_call_count(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @router.post("/calls/{call_id}/hangup")
    async def hangup_call(call_id: str, request: Request) -> Dict[str, Any]:
        orchestrator = get_orchestrator(request)
        tracked = await orchestrator.hangup_call(call_id)
        return {"callId": call_id, "tracked": tracked}

    @router.post("/calls/{call_id}/speech", status_code=202)
    async def recognized_speech(call_id: str, event: SpeechEvent, request: Request) -> Dict[str, Any]:
        orchestrator = get_orchestrator(request)
        metrics.speech_events += 1
        if not orchestrator.on_recognized_speech(call_id, event.text, speaker=event.speaker):
            raise HTTPException(status_code=404, detail="Call not found")
        return {"callId": call_id, "queued": True}

    @router.post("/calls/{call_id}/say")
    async def say(call_id: str, body: SayRequest, request: Request) -> Dict[str, Any]:
        orchestrator = get_orchestrator(request)
        if orchestrator.get_session(call_id) is None:
            raise HTTPException(status_code=404, detail="Call not found")
        if not body.prompt or not body.prompt.strip():
            raise HTTPException(status_code=400, detail="Prompt is required")

        spoken = await orchestrator.say(
            call_id,
            body.prompt,
            use_brain=body.use_brain,
            voice_name=body.voice,
        )
        return {"callId": call_id, "spoken": spoken}

    return router


def create_app(
    config: Optional[Config] = None,
    orchestrator: Optional[CallOrchestrator] = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    Pass `orchestrator` to skip configuration loading (tests, embedding).
    """
    if config is None:
        config = get_config()

    metrics = ServerMetrics()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        # Startup
        logger.info("Starting calling bot server...")

        if app.state.orchestrator is None:
            try:
                # Initialize and validate configuration
                loaded = init_config()
                configure_logging(loaded.log_level)
                app.state.orchestrator = create_orchestrator(loaded)

                logger.info(
                    "Server ready",
                    port=loaded.port,
                    callback_url=loaded.callback_url,
                    signaling_mode=loaded.signaling_mode,
                )

            except ConfigError as e:
                logger.error("Configuration error", error=str(e))
                sys.exit(1)
            except SystemExit:
                raise
            except Exception as e:
                logger.error("Startup failed", error=str(e))
                sys.exit(1)

        yield

        # Shutdown
        logger.info("Shutting down server...")
        if app.state.orchestrator is not None:
            await app.state.orchestrator.shutdown()

    app = FastAPI(
        title="Calling Bot",
        description="Voice bot that joins calls, listens for a wake phrase and answers via the brain",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.metrics = metrics

    app.include_router(_build_router(config.callback_path, metrics))

    @app.get("/healthz", response_class=PlainTextResponse)
    async def healthz() -> str:
        """Liveness probe."""
        return "ok"

    @app.get("/metrics")
    async def get_metrics(request: Request) -> JSONResponse:
        """Metrics endpoint."""
        content: Dict[str, Any] = {"server": metrics.to_dict()}
        current = getattr(request.app.state, "orchestrator", None)
        if current is not None:
            content["calls"] = current.metrics.to_dict()
            content["active_calls"] = current.get_active_call_count()
            content["sessions"] = [
                dict(session.to_dict(), synthesis=session.synthesis.metrics.to_dict())
                if session.synthesis is not None else session.to_dict()
                for session in current.list_sessions()
            ]
        return JSONResponse(content=content)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler."""
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            error=str(exc),
        )
        metrics.errors += 1

        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error"},
        )

    return app


app = create_app()


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info(
        "Starting server",
        port=config.port,
    )

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
