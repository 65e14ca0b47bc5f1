"""
FastAPI Application — WhatsApp webhooks + dashboard REST + observer WebSocket.

Provides:
- Webhook verification and ingestion for WhatsApp Cloud API
- REST API for the conversation dashboard
- WebSocket endpoint streaming conversation events to observers
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from config.settings import Settings, get_settings
from core.errors import InvalidPayloadError
from core.service import ConversationService, create_service

logger = structlog.get_logger()


def create_app(service: Optional[ConversationService] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (service.settings if service else get_settings())
    service = service or create_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        logger.info("juli_started", app_name=settings.app_name,
                    whatsapp_mock=not settings.whatsapp.access_token)
        yield
        await service.stop()
        logger.info("juli_stopped")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="WhatsApp legal-assistant conversation backend",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InvalidPayloadError)
    async def invalid_payload_handler(request: Request, exc: InvalidPayloadError):
        logger.warning("webhook_payload_rejected", error=str(exc))
        return JSONResponse(status_code=400, content={"error": "invalid_payload", "detail": str(exc)})

    # ══════════════════════════════════════════════════════════════
    #  HEALTH & DIAGNOSTICS
    # ══════════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "running": service.started,
            "conversations": await service.registry.count(),
        }

    @app.get("/api/v1/stats")
    async def get_stats():
        return await service.stats()

    # ══════════════════════════════════════════════════════════════
    #  CONVERSATIONS
    # ══════════════════════════════════════════════════════════════

    @app.get("/api/v1/conversations")
    async def list_conversations(category: str = None):
        convs = await service.list_conversations()
        if category:
            convs = [c for c in convs if c.category and c.category.value == category]
        return [c.summary() for c in convs]

    @app.get("/api/v1/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str):
        conv = await service.get_conversation(conversation_id)
        if not conv:
            raise HTTPException(404, "Conversation not found")
        return conv.model_dump(mode="json")

    @app.post("/api/v1/conversations/{conversation_id}/close")
    async def close_conversation(conversation_id: str):
        if not await service.close_conversation(conversation_id):
            raise HTTPException(404, "Conversation not found")
        return {"status": "closed", "conversation_id": conversation_id}

    @app.post("/api/v1/conversations/{conversation_id}/heartbeat")
    async def conversation_heartbeat(conversation_id: str):
        conv = await service.record_heartbeat(conversation_id)
        if not conv:
            raise HTTPException(404, "Conversation not found")
        return {"status": "ok", "last_heartbeat": conv.last_heartbeat.isoformat()}

    # ══════════════════════════════════════════════════════════════
    #  WEBHOOKS — WhatsApp
    # ══════════════════════════════════════════════════════════════

    @app.get("/webhooks/whatsapp")
    async def whatsapp_verify(request: Request):
        params = dict(request.query_params)
        challenge = service.transport.verify_webhook(params)
        if challenge:
            return PlainTextResponse(challenge)
        raise HTTPException(403, "Verification failed")

    @app.post("/webhooks/whatsapp")
    async def whatsapp_webhook(request: Request):
        """Receive WhatsApp messages with signature verification."""
        body_bytes = await request.body()

        signature = request.headers.get("X-Hub-Signature-256", "")
        if not service.transport.verify_signature(body_bytes, signature):
            logger.warning("whatsapp_webhook_signature_invalid")
            raise HTTPException(403, "Invalid signature")

        try:
            body = json.loads(body_bytes)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidPayloadError(f"Body is not valid JSON: {e}") from e

        result = await service.ingest(body)
        return {"processed": result["processed"], "errors": result["errors"], "details": result["details"]}

    # ══════════════════════════════════════════════════════════════
    #  WEBSOCKET — Dashboard observers
    # ══════════════════════════════════════════════════════════════

    @app.websocket("/ws/monitor")
    async def websocket_monitor(websocket: WebSocket):
        """
        Live conversation events for dashboards.

        Server sends: {"type": "conversations", ...} once, then bus events and pings.
        Client sends: {"type": "pong"}
        """
        await websocket.accept()
        observer_id = await service.observers.register(websocket, await service.snapshot())

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    event = json.loads(raw)
                except json.JSONDecodeError:
                    logger.debug("observer_message_not_json", observer_id=observer_id)
                    continue
                if isinstance(event, dict):
                    await service.observers.handle_client_event(observer_id, event)
        except WebSocketDisconnect:
            logger.info("observer_disconnected", observer_id=observer_id)
        except Exception as e:
            logger.error("websocket_error", observer_id=observer_id, error=str(e))
        finally:
            await service.observers.unregister(observer_id)

    return app


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:create_app", factory=True, host="0.0.0.0", port=8000)
