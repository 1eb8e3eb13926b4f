"""
FastAPI application for the tsquery engine.

Runs the reactive query engine server-side and serves its output to UI
clients over WebSocket. The engine connects to the timeseries server given
by the TSQUERY_* environment variables (see tsquery/config.py).
"""

import os
from typing import Optional

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import ORJSONResponse

from bridge import BridgeManager
from tsquery import __version__
from tsquery.config import EngineConfig
from tsquery.engine import QueryEngine
from tsquery.shared.logger import get_logger, setup_logging

logger = get_logger(__name__)


def create_app(engine: Optional[QueryEngine] = None) -> FastAPI:
    """Build the app around an engine (one is created from env if omitted)."""
    if engine is None:
        config = EngineConfig.from_env()
        setup_logging(config.log_level)
        engine = QueryEngine(config)

    app = FastAPI(
        title="tsquery API",
        description="Reactive timeseries query engine",
        version=__version__,
        default_response_class=ORJSONResponse,
    )
    bridge = BridgeManager(engine)
    app.state.engine = engine
    app.state.bridge = bridge

    # ============= Startup Events =============

    @app.on_event("startup")
    async def startup_event():
        """Connect the engine's event channel."""
        logger.info("tsquery %s starting...", __version__)
        logger.info("Engine config: %s", engine.config.to_dict())
        await engine.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        await engine.stop()

    # ============= HTTP Endpoints =============

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "connected": engine.connected,
            "events_status": engine.router.status,
            "queries": len(engine.queries),
            "cached_queries": len(engine.queries.cached),
        }

    @app.get("/api/ws/stats")
    async def get_websocket_stats():
        """Get bridge connection statistics."""
        return {
            "total_connections": bridge.get_connection_count(),
            "open_queries": bridge.get_query_count(),
        }

    # ============= WebSocket Endpoints =============

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, client_id: str = None):
        """
        Main WebSocket endpoint for query output.

        Message format (JSON):
        {
            "cmd": "query" | "close" | "ping",
            "key": "view key",
            "query": {...}
        }
        """
        await bridge.connect(websocket, client_id)

        try:
            while True:
                message_text = await websocket.receive_text()
                response = await bridge.handle_message(websocket, message_text)
                if response:
                    await bridge.send_to_connection(websocket, response)

        except WebSocketDisconnect:
            await bridge.disconnect(websocket)
        except Exception as e:
            logger.error("WebSocket error: %s", e)
            await bridge.disconnect(websocket)

    return app


app = create_app()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="tsquery engine server")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("TSQUERY_PORT", 8000)),
        help="Port to run the server on (default: 8000 or TSQUERY_PORT env var)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    args = parser.parse_args()

    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        log_level="info",
    )
