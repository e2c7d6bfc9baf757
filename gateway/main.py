"""FastAPI app: builds the gateway context, wires routers, CORS and the error envelope."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import GatewaySettings, load_settings
from .context import build_context
from .errors import GatewayError
from .routers import broadcast, conversion, emergency, health, live

logger = logging.getLogger(__name__)

_NOISY_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3", "pymongo", "multipart", "websockets")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format="%(asctime)s  %(name)s  %(message)s", datefmt="%H:%M:%S")
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def create_app(settings: GatewaySettings | None = None, **overrides) -> FastAPI:
    """
    overrides are passed to build_context (live_state, recordings,
    object_store, transcoder, spawn) so tests can swap out MongoDB, S3 and
    ffmpeg.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = build_context(settings, **overrides)
        app.state.context = ctx
        await ctx.start()
        logger.info(
            "Broadcast gateway ready (relay %s:%s%s)", settings.relay.host, settings.relay.port, settings.relay.mount
        )
        try:
            yield
        finally:
            await ctx.close()
            logger.info("Broadcast gateway stopped")

    app = FastAPI(title="Live broadcast gateway", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(GatewayError, gateway_error_handler)

    app.include_router(health.router)
    app.include_router(live.router)
    app.include_router(broadcast.router)
    app.include_router(emergency.router)
    app.include_router(conversion.router)
    return app
