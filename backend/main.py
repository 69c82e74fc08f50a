"""
SendOver: FastAPI application entry point.

Starts the peer session on the TCP transport on startup, serves the REST API
and the WebSocket event stream.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT
from session.manager import PeerSession
from transport.tcp import TcpTransport

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(session_factory=lambda: PeerSession(TcpTransport())) -> FastAPI:
    """Build the app around a session created at startup."""
    ws_manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop the peer session."""
        logger.info("Starting SendOver session...")
        session = session_factory()
        app.state.session = session
        session.on_event(ws_manager.handle_event)
        init_routes(session)

        try:
            await session.start()
            identity = session.snapshot().identity
            logger.info(
                f"SendOver ready. API: {API_HOST}:{API_PORT}, "
                f"code: {identity.code if identity else 'pending'}"
            )
            yield
        finally:
            logger.info("Shutting down SendOver session...")
            await session.stop()

    app = FastAPI(
        title="SendOver",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173", "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        snapshot = app.state.session.snapshot().model_dump(mode="json")
        await ws_manager.connect(websocket, snapshot)
        try:
            while True:
                # Keep the connection alive; we don't expect client messages
                await websocket.receive_text()
        except WebSocketDisconnect:
            await ws_manager.disconnect(websocket)

    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    main()
