"""Main FastAPI application for the direct messaging backend."""
from typing import Optional, Set
import logging

from fastapi import FastAPI, WebSocket
from sqlalchemy.engine import Engine
from starlette.concurrency import run_in_threadpool

from app.db.config import engine as default_engine, session_factory
from app.db.init import init_db
from app.middleware.cors import add_cors_middleware
from app.middleware.errors import register_exception_handlers
from app.routers import messages_router
from app.services.chat_service import ChatService, RECONCILE_ON_LIST
from app.services.friend_graph import FriendGraph
from app.services.presence import PresenceRegistry
from app.utils.metrics import metrics_collector
from app.ws.gateway import RealtimeGateway

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


def create_app(bind_engine: Optional[Engine] = None,
               reconcile_on_list: Optional[bool] = None) -> FastAPI:
    """
    Build the application and its process-wide collaborators.

    The presence registry, chat service and gateway are created once here
    and shared through ``app.state``.
    """
    app = FastAPI(
        title="Direct Messaging API",
        description="REST and WebSocket API for one-to-one messaging between friends",
        version=API_VERSION,
    )

    target_engine = bind_engine or default_engine
    open_session = session_factory(target_engine)

    def _friends_of(user_id: str) -> Set[str]:
        with open_session() as db:
            return FriendGraph(db).friends_of(user_id)

    async def friends_of(user_id: str) -> Set[str]:
        return await run_in_threadpool(_friends_of, user_id)

    presence = PresenceRegistry(friends_of)
    chat = ChatService(
        open_session,
        presence,
        reconcile_on_list=RECONCILE_ON_LIST if reconcile_on_list is None else reconcile_on_list,
    )

    app.state.engine = target_engine
    app.state.session_factory = open_session
    app.state.presence = presence
    app.state.chat = chat
    app.state.gateway = RealtimeGateway(open_session, presence, chat)

    # Add CORS middleware
    add_cors_middleware(app)
    register_exception_handlers(app)

    @app.on_event("startup")
    async def startup_event():
        """Create tables on startup."""
        try:
            init_db(target_engine)
            logger.info("[SUCCESS] Database tables initialized successfully.")
        except Exception as e:
            logger.warning(f"[WARNING] Database initialization failed: {str(e)}")
            logger.warning("[WARNING] Server will continue but database operations may fail.")

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": API_VERSION,
            "connected_users": len(presence.online_user_ids()),
            "connections": presence.connection_count(),
            "metrics": metrics_collector.get_metrics(),
        }

    @app.get("/")
    async def root():
        """Root endpoint - API welcome message."""
        return {
            "message": "Welcome to the Direct Messaging API",
            "version": API_VERSION,
            "docs": "/docs",
            "health": "/health",
            "websocket": "/ws",
        }

    app.include_router(messages_router, prefix="/api")  # Message endpoints: /api/messages/...

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Realtime channel; authenticate with ?token= or an authenticate frame."""
        await app.state.gateway.handle(websocket)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
