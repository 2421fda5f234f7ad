"""FastAPI application with CORS, lifespan, and routes."""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, settings
from .api.routes import router
from .api.websocket import ConnectionHandler
from .engine import workspace
from .engine.controller import ExecutionController
from .engine.registry import SessionRegistry


def create_app(app_settings: Settings | None = None) -> FastAPI:
    app_settings = app_settings or settings
    logging.basicConfig(
        level=app_settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: one registry per service, owned by the controller
        workspace.ensure_root(app_settings.workspace_root)
        app.state.controller = ExecutionController(SessionRegistry(), app_settings)
        yield
        await app.state.controller.shutdown()

    app = FastAPI(
        title=app_settings.app_name,
        debug=app_settings.debug,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await ConnectionHandler(websocket, websocket.app.state.controller).serve()

    return app


app = create_app()


def run():
    uvicorn.run(app, host=settings.host, port=settings.port)
