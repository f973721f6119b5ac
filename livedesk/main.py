from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from loguru import logger
from starlette.middleware.cors import CORSMiddleware

from livedesk import config
from livedesk.channels import Channel
from livedesk.live_agent_system import SessionCoordinator
from livedesk.models import AgentIdentity
from livedesk.observability import setup_observability, shutdown_observability
from livedesk.storage import InMemoryAgentDirectory, InMemoryChatStore


def build_default_coordinator() -> SessionCoordinator:
    """Wire the production collaborators: ChromaDB search, OpenAI and in-memory stores."""
    # Model-loading modules are only imported when the default wiring is needed
    from livedesk.assistant import ResponseEngine
    from livedesk.knowledge import ChromaKnowledgeSearch
    from livedesk.llm import OpenAILanguageModel

    store = InMemoryChatStore()
    directory = InMemoryAgentDirectory()
    for entry in filter(None, (item.strip() for item in config.DEV_AGENTS.split(","))):
        agent_id, name, token = entry.split(":", 2)
        directory.add(AgentIdentity(agent_id=agent_id, username=agent_id, name=name))
        directory.issue_token(agent_id, token=token)
        logger.info("Registered development agent {}", agent_id)

    engine = ResponseEngine(OpenAILanguageModel(), ChromaKnowledgeSearch(), store)
    return SessionCoordinator(engine, store, directory)


def create_app(coordinator: Optional[SessionCoordinator] = None) -> FastAPI:
    app = FastAPI(
        title="Live Desk",
        description="Routes customer chats between an AI assistant and human agents.",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.coordinator = coordinator

    @app.on_event("startup")
    async def startup_event():
        if config.OTEL_ENABLED:
            try:
                setup_observability()
            except Exception as e:
                logger.error("Failed to initialize OpenTelemetry: {}", e)
        if app.state.coordinator is None:
            logger.info("FastAPI startup event: building session coordinator...")
            app.state.coordinator = build_default_coordinator()
        logger.info("Live desk ready")

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.coordinator is not None:
            app.state.coordinator.shutdown()
        shutdown_observability()

    @app.websocket("/ws")
    async def chat_websocket(websocket: WebSocket):
        """Single endpoint for customers and agents; the first events decide the role."""
        await websocket.accept()
        coordinator: SessionCoordinator = websocket.app.state.coordinator
        channel = Channel(websocket)
        logger.info("Client connected: {}", channel)
        try:
            while True:
                data = await websocket.receive_json()
                await coordinator.handle_event(channel, data)
        except WebSocketDisconnect:
            logger.info("Client disconnected: {}", channel)
        except Exception as e:
            logger.error("Error in WebSocket loop for {}: {}", channel, e)
        finally:
            await coordinator.channel_closed(channel)

    @app.get("/health")
    async def health(request: Request):
        stats = request.app.state.coordinator.stats()
        stats["service"] = config.SERVICE_NAME
        return stats

    @app.get("/analytics")
    async def analytics(request: Request):
        return await request.app.state.coordinator.analytics()

    @app.get("/chat-history")
    async def chat_history(request: Request, limit: int = 50):
        records = await request.app.state.coordinator.store.list_chat_history(limit=limit)
        return {
            "history": [
                {
                    "session_id": record.session_id,
                    "agent_name": record.agent_name,
                    "end_reason": record.end_reason.value,
                    "start_time": record.start_time.isoformat(),
                    "end_time": record.end_time.isoformat(),
                    "message_count": len(record.messages),
                    "customer_name": record.customer_info.name if record.customer_info else None,
                    "rating": record.satisfaction.rating if record.satisfaction else None,
                }
                for record in reversed(records)
            ]
        }

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("livedesk.main:create_app", factory=True, host=config.HOST, port=config.PORT, reload=True)
