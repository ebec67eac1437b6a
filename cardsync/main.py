from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from cardsync.config import settings
from cardsync.database import async_session, init_db


async def build_supervisor():
    """Default supervisor: the configured database plus the configured authority."""
    from cardsync.game.match_authority import build_match_authority
    from cardsync.game.session_store import SessionStore
    from cardsync.game.session_supervisor import SessionSupervisor

    await init_db()
    return SessionSupervisor(
        SessionStore(async_session),
        authority=build_match_authority(settings),
        settings=settings,
    )


def create_app(supervisor_factory=None) -> FastAPI:
    """Build the app; *supervisor_factory* is an async callable returning a supervisor."""
    factory = supervisor_factory or build_supervisor

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        supervisor = await factory()
        app.state.supervisor = supervisor
        await supervisor.start()
        yield
        await supervisor.stop()
        await supervisor.authority.aclose()

    app = FastAPI(title="cardsync", version="0.1.0", lifespan=lifespan)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    from cardsync.api.sessions import router as sessions_router
    from cardsync.api.metrics import router as metrics_router

    app.include_router(sessions_router)
    app.include_router(metrics_router)

    @app.get("/")
    async def root():
        return {"status": "ok", "service": "cardsync"}

    @app.websocket("/ws/events")
    async def websocket_endpoint(websocket: WebSocket):
        from cardsync.ws.handler import websocket_handler
        await websocket_handler(websocket)

    return app


app = create_app()
