import logging

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import chat, comments, community, feed, notify, search, user
from app.config import Settings, settings
from app.database import build_engine, build_session_factory, create_tables
from app.errors import CirqlsError
from app.security import build_verifier
from app.ws import NotificationHub, serve_subscription

logger = logging.getLogger("cirqls.api")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def cirqls_error_handler(request: Request, exc: CirqlsError):
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.detail)
        # Server-side failures never echo their cause
        detail = type(exc).default_detail
    else:
        detail = exc.detail
    return JSONResponse(status_code=exc.status_code, content={"error": exc.kind, "detail": detail})


def create_app(config: Settings = settings) -> FastAPI:
    app = FastAPI(title="Cirqls")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(CirqlsError, cirqls_error_handler)

    app.include_router(feed.router, prefix="/api/posts", tags=["posts"])
    app.include_router(comments.router, prefix="/api/comments", tags=["comments"])
    app.include_router(chat.router, prefix="/api/messages", tags=["messages"])
    app.include_router(notify.router, prefix="/api/notifications", tags=["notifications"])
    app.include_router(user.router, prefix="/api/users", tags=["users"])
    app.include_router(community.router, prefix="/api/communities", tags=["communities"])
    app.include_router(search.router, prefix="/api/search", tags=["search"])

    @app.on_event("startup")
    async def startup():
        configure_logging(config.LOG_LEVEL)
        app.state.engine = build_engine(config)
        app.state.session_factory = build_session_factory(app.state.engine)
        await create_tables(app.state.engine)
        app.state.verifier = build_verifier(config)
        app.state.hub = NotificationHub(app.state.verifier)
        logger.info("cirqls started database=%s", config.database_url)

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.hub.shutdown()
        await app.state.engine.dispose()

    @app.get("/")
    async def root():
        return {"message": "Cirqls backend is running"}

    @app.websocket("/ws/{channel}")
    async def websocket_subscription(websocket: WebSocket, channel: str):
        await serve_subscription(websocket, app.state.hub, channel, config.WS_HANDSHAKE_TIMEOUT)

    return app


app = create_app()
