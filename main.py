"""
Agent Stream Proxy Server
Loopback-only FastAPI service reached by clients through an authenticated tunnel
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import ServerSettings, load_environment, load_server_settings
from core.agent_runners import AgentRunner
from core.errors import MalformedFrame, MissingSessionId, SessionNotFound, TurnInProgress
from core.services import ServerServices
from handlers.agent_stream import router
from models.events import utcnow

logger = logging.getLogger(__name__)


class ProxyHeadersMiddleware:
    """
    Stamps every response with the proxy version and start time
    """

    def __init__(self, app, version: str, started_at: str):
        self.app = app
        self.headers = [
            (b"x-proxy-version", version.encode("latin-1")),
            (b"x-proxy-started-at", started_at.encode("latin-1")),
        ]

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message):
            if message["type"] == "http.response.start":
                message = dict(message)
                message["headers"] = list(message.get("headers", [])) + self.headers
            await send(message)

        await self.app(scope, receive, send_with_headers)


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


def create_app(
    settings: Optional[ServerSettings] = None,
    services: Optional[ServerServices] = None,
    runner: Optional[AgentRunner] = None,
) -> FastAPI:
    """
    Build the proxy application

    Args:
        settings: Server settings, read from the environment when None
        services: Pre-built services (tests); created at startup when None
        runner: Computation backend override used when services are created

    Returns:
        FastAPI app
    """
    settings = settings or (services.settings if services else load_server_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            app.state.services = await ServerServices.create(settings, runner=runner)
        logger.info(f"Proxy ready on {settings.host}:{settings.port} runner={settings.agent_runner}")
        try:
            yield
        finally:
            if owned:
                await app.state.services.close()
                app.state.services = None

    app = FastAPI(title="Agent Stream Proxy", version=settings.proxy_version, lifespan=lifespan)
    app.state.services = services
    app.include_router(router)

    started_at = services.started_at if services else utcnow()
    app.add_middleware(
        ProxyHeadersMiddleware,
        version=settings.proxy_version,
        started_at=started_at.isoformat(),
    )

    @app.exception_handler(SessionNotFound)
    async def session_not_found_handler(request: Request, exc: SessionNotFound):
        return _error_response(404, exc)

    @app.exception_handler(MissingSessionId)
    async def missing_session_id_handler(request: Request, exc: MissingSessionId):
        return _error_response(400, exc)

    @app.exception_handler(MalformedFrame)
    async def malformed_frame_handler(request: Request, exc: MalformedFrame):
        return _error_response(400, exc)

    @app.exception_handler(TurnInProgress)
    async def turn_in_progress_handler(request: Request, exc: TurnInProgress):
        return _error_response(409, exc)

    return app


def _configure_logging():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


if __name__ == "__main__":
    import uvicorn

    load_environment()
    _configure_logging()
    server_settings = load_server_settings()

    print(f"Server started at {server_settings.host}:{server_settings.port}")
    uvicorn.run(create_app(server_settings), host=server_settings.host, port=server_settings.port)
